"""Digiforma → CRM reconciliation and sync engine."""
from digiforma.client import ConnectionTestResult, DigiformaClient
from digiforma.exceptions import (
    CompanyNotFoundError,
    DigiformaAPIError,
    DigiformaError,
    DigiformaNotConfiguredError,
    InstitutionNotFoundError,
    MappingNotFoundError,
    SyncAlreadyRunningError,
)
from digiforma.matching import AUTO_MATCH_THRESHOLD, MIN_SCORE, DigiformaMatcher, MatchResult
from digiforma.merge import DigiformaMerger
from digiforma.orchestrator import DigiformaSyncOrchestrator
from digiforma.service import DigiformaSyncService

__all__ = [
    "AUTO_MATCH_THRESHOLD",
    "MIN_SCORE",
    "CompanyNotFoundError",
    "ConnectionTestResult",
    "DigiformaAPIError",
    "DigiformaClient",
    "DigiformaError",
    "DigiformaMatcher",
    "DigiformaMerger",
    "DigiformaNotConfiguredError",
    "DigiformaSyncOrchestrator",
    "DigiformaSyncService",
    "InstitutionNotFoundError",
    "MappingNotFoundError",
    "MatchResult",
    "SyncAlreadyRunningError",
]
