"""Error taxonomy shared by the session services and the HTTP layer."""


class QuizError(Exception):
    """Base class for every error raised by the trivia services."""


class ValidationError(QuizError):
    """Bad input, rejected before any state is touched."""


class NoQuestionsError(ValidationError):
    pass


class RoomNotFoundError(QuizError):
    pass


class StateConflictError(QuizError):
    """The request does not fit the room's current state."""


class SessionAlreadyStartedError(StateConflictError):
    pass


class LeaseConflictError(StateConflictError):
    """Another controller owns the room's clock."""


class ConcurrencyConflict(QuizError):
    """A conditional store write lost against a concurrent writer.

    Raised by the store and absorbed by the session controller; clients
    never see it.
    """


class StoreUnavailableError(QuizError):
    """The shared store could not be reached."""
