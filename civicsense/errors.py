from __future__ import annotations


class CivicSenseError(RuntimeError):
    pass


class InvalidInputError(CivicSenseError, ValueError):
    pass


class SessionBusyError(CivicSenseError):
    pass


class SessionClosedError(CivicSenseError):
    pass


class InferenceUnavailableError(CivicSenseError):
    pass


class MediaServiceError(CivicSenseError):
    pass


class MapsServiceError(CivicSenseError):
    pass


class PersistenceError(CivicSenseError):
    pass


class ProposalNotFoundError(PersistenceError):
    pass


class PermissionDeniedError(PersistenceError):
    pass
