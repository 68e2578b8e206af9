"""healthmint-compliance: PHI detection, de-identification, consent and audit delivery."""

__version__ = "0.4.0"
