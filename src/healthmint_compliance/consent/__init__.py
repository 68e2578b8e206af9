"""Consent tracking per subject and consent type."""

from .ledger import ConsentLedger, ConsentRequester
from .models import ConsentRecord, ConsentResult, ConsentType, DataAccessDecision

__all__ = [
    "ConsentLedger",
    "ConsentRecord",
    "ConsentRequester",
    "ConsentResult",
    "ConsentType",
    "DataAccessDecision",
]
