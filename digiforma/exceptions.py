"""Errors raised by the Digiforma sync engine."""


class DigiformaError(Exception):
    """Base class for every error raised by this package."""


class DigiformaAPIError(DigiformaError):
    """Transport, HTTP or GraphQL-level failure talking to Digiforma."""

    def __init__(self, message: str, status_code=None, errors=None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class DigiformaNotConfiguredError(DigiformaError):
    """No API token stored, or the integration is disabled."""


class SyncAlreadyRunningError(DigiformaError):
    def __init__(self, sync_id):
        super().__init__(f"A Digiforma sync is already in progress ({sync_id})")
        self.sync_id = sync_id


class MappingNotFoundError(DigiformaError):
    pass


class CompanyNotFoundError(DigiformaError):
    pass


class InstitutionNotFoundError(DigiformaError):
    pass
