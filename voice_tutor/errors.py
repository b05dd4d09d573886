"""Exception types shared across the tutor."""


class TutorError(Exception):
    """Base class for tutor failures."""


class TransportError(TutorError):
    """Audio capture or speech-to-text stream failure. Shown to the user."""


class GenerationError(TutorError):
    """Reply generation or speech synthesis failure. Aborts the current turn."""


class AssessmentParseError(TutorError):
    """A category assessment reply could not be turned into knowledge states."""


class InvalidTransition(TutorError):
    """A state change the turn-taking state machine does not allow."""
