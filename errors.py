"""
errors.py — Error taxonomy for itinerary generation.

Every business-rule failure raised by the lifecycle layer is a LifecycleError
tagged with one ErrorKind.  Callers branch on ``exc.kind`` (a closed enum)
instead of catching a zoo of exception subclasses:

    try:
        await lifecycle.cancel(db, user_id, itinerary_id)
    except LifecycleError as exc:
        if exc.kind is ErrorKind.INVALID_STATE:
            ...

HTTP_STATUS maps every kind to the status code the API layer returns.
"""

import enum


class ErrorKind(str, enum.Enum):
    NOT_FOUND           = 'not_found'
    PRECONDITION_FAILED = 'precondition_failed'
    CONFLICT            = 'conflict'
    INVALID_STATE       = 'invalid_state'
    VALIDATION_FAILED   = 'validation_failed'
    UPSTREAM_FAILURE    = 'upstream_failure'
    STORAGE_FAILURE     = 'storage_failure'


HTTP_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND:           404,
    ErrorKind.PRECONDITION_FAILED: 403,
    ErrorKind.CONFLICT:            409,
    ErrorKind.INVALID_STATE:       409,
    ErrorKind.VALIDATION_FAILED:   422,
    ErrorKind.UPSTREAM_FAILURE:    502,
    ErrorKind.STORAGE_FAILURE:     500,
}

# Short, non-technical messages persisted on failed itineraries.
FAILURE_MESSAGES: dict[ErrorKind, str] = {
    ErrorKind.UPSTREAM_FAILURE:  'The route planner is unavailable right now. Please try again.',
    ErrorKind.VALIDATION_FAILED: 'The generated route was incomplete or invalid. Please try again.',
    ErrorKind.STORAGE_FAILURE:   'The route could not be saved. Please try again.',
}
TRUNCATED_MESSAGE = 'The route was too long to generate. Please try again with a shorter trip.'
UNPARSEABLE_MESSAGE = 'The route planner returned an unreadable route. Please try again.'
GENERIC_FAILURE_MESSAGE = 'An unexpected error occurred. Please try again.'


class LifecycleError(Exception):
    """A tagged business error: ``kind`` + message + structured context."""

    def __init__(self, kind: ErrorKind, message: str, **context):
        super().__init__(message)
        self.kind    = kind
        self.message = message
        self.context = context

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]

    def user_message(self) -> str:
        """Message safe to persist on a failed itinerary."""
        if self.context.get('truncated'):
            return TRUNCATED_MESSAGE
        if self.context.get('unparseable'):
            return UNPARSEABLE_MESSAGE
        return FAILURE_MESSAGES.get(self.kind, GENERIC_FAILURE_MESSAGE)

    def to_dict(self) -> dict:
        d = {'error': self.kind.value, 'message': self.message}
        details = {k: v for k, v in self.context.items()
                   if k not in ('truncated', 'unparseable')}
        if details:
            d['details'] = details
        return d

    def __repr__(self):
        return f'<LifecycleError {self.kind.value}: {self.message!r}>'


def not_found(what: str = 'Itinerary') -> LifecycleError:
    return LifecycleError(ErrorKind.NOT_FOUND, f'{what} not found or has been deleted')
