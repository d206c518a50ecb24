class TeloquentError(Exception):
    """Base class for errors raised by the package."""
    ...


class UsageError(TeloquentError):
    """Raised when a class or method is used incorrectly."""
    ...


class ConfigurationError(TeloquentError):
    """Raised when I/O is attempted before a database is configured."""
    ...


class ModelNotFoundError(TeloquentError):
    """Raised by the `*_or_fail` finders when no record matches."""
    model: str
    key: object

    def __init__(self, model: str, key: object = None) -> None:
        self.model = model
        self.key = key
        if key is None:
            super().__init__(f'no {model} record matched the query')
        else:
            super().__init__(f'no {model} record found with key {key!r}')


def tert(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a TypeError with the given message."""
    if not condition:
        raise TypeError(error_message)

def vert(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a ValueError with the given message."""
    if not condition:
        raise ValueError(error_message)

def tressa(condition: bool, error_message: str = '') -> None:
    """If condition is false, raises a UsageError with the given message."""
    if not condition:
        raise UsageError(error_message)
