"""
Exceptions raised by flagkit. Every exception derives from FlagKitError and
from the builtin exception callers would naturally expect, so code written
against ValueError/LookupError/TypeError keeps working.
"""

from __future__ import annotations


class FlagKitError(Exception):
    pass


class InvalidDatafileError(FlagKitError, ValueError):
    """The datafile could not be decoded, validated or is of an unsupported version."""


class NotFoundError(FlagKitError, LookupError):
    """A feature, experiment, event, variable, audience or attribute key is absent."""


class InvalidArgumentError(FlagKitError, TypeError):
    pass


class InvalidAttributeValueTypeError(FlagKitError, ValueError):
    pass


class ConfigNotReadyError(FlagKitError, RuntimeError):
    pass


class TransportError(FlagKitError):
    """An HTTP request failed at the network level or returned a non-2xx status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class CmabFetchError(TransportError):
    pass


class CmabFetchFailedError(FlagKitError):
    def __init__(self, experiment_key: str):
        super().__init__(f"Failed to fetch CMAB data for experiment {experiment_key}.")
        self.experiment_key = experiment_key
