"""Exception hierarchy for visitor-id."""

from __future__ import annotations


class VisitorIdError(Exception):
    """Base class for all visitor-id errors."""


class ConfigError(VisitorIdError, ValueError):
    """Invalid matcher weights, thresholds or settings."""


class ValidationError(VisitorIdError):
    """A resolution request is missing its client token or fingerprint."""


class PersistenceError(VisitorIdError):
    """The identity store failed to read or write."""


class ConcurrentUpdateError(PersistenceError):
    """A write lost a race against another resolution for the same identity."""
