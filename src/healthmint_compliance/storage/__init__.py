from .buffer import JsonFileBuffer, LocalBuffer, MemoryBuffer

__all__ = ["JsonFileBuffer", "LocalBuffer", "MemoryBuffer"]
