from .errors import ClassifiedError, ErrorKind
from . import models, events, errors

__all__ = ["ClassifiedError", "ErrorKind", "models", "events", "errors"]
