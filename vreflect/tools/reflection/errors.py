"""Exceptions raised by the reflection tool."""

from vreflect.libs.jsonl_store import JsonlDecodeError


class ReflectionError(Exception):
    """Base class for reflection errors."""


class ConfigurationError(ReflectionError):
    """The run cannot start because of a bad or missing setting."""


class CheckpointError(ReflectionError):
    """A checkpoint or ledger file could not be read."""

    def __init__(self, path: str, line_number: int, message: str):
        super().__init__(f"Corrupt checkpoint {path} at line {line_number}: {message}")
        self.path = path
        self.line_number = line_number

    @classmethod
    def from_decode_error(cls, e: JsonlDecodeError) -> "CheckpointError":
        return cls(e.path, e.line_number, str(e.__cause__ or e))
