"""Error families shared by the secret store, role resolver and rotation engine.

Services raise narrower subclasses (``SecretNotFoundError(NotFoundError)``
and so on); the HTTP layer only needs to know the family to pick a status.
"""

from __future__ import annotations


class LifecycleError(Exception):
    pass


class ValidationError(LifecycleError):
    pass


class NotFoundError(LifecycleError):
    pass


class AccessForbiddenError(LifecycleError):
    pass


class DecryptionError(LifecycleError):
    pass


class ExternalCallFailure(LifecycleError):
    pass


class ConflictError(LifecycleError):
    pass


class InvariantViolation(LifecycleError):
    pass
