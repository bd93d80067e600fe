"""Exception taxonomy for palaver.

Programmer errors (``UnsupportedContentError``, ``UnsupportedFeatureError``,
``ProviderNotFoundError``) are raised before any streaming begins.  The tool errors are raised inside
the :class:`~palaver.runner.Runner` and always converted to ``tool``-role
messages before they can reach the caller.
"""


class PalaverError(Exception):
    """Base class for all palaver errors."""


class UnsupportedContentError(PalaverError):
    """A message content part has no representation for the target vendor."""

    def __init__(self, part_type: str, provider: str):
        self.part_type = part_type
        self.provider = provider
        super().__init__(
            f"Unsupported content part type '{part_type}' for provider '{provider}'"
        )


class ProviderNotFoundError(PalaverError):
    """No adapter is registered under the configured provider name."""


class ToolNotFoundError(PalaverError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"tool '{name}' not found")


class ArgumentParseError(PalaverError):
    def __init__(self, name: str, detail: str):
        self.name = name
        self.detail = detail
        super().__init__(f"invalid arguments for {name}: {detail}")


class ToolExecutionError(PalaverError):
    def __init__(self, name: str, cause: BaseException):
        self.name = name
        self.cause = cause
        super().__init__(f"Error calling {name}: {cause}")


class UnsupportedFeatureError(PalaverError):
    """A request option has no representation for the target vendor."""

    def __init__(self, feature: str, provider: str):
        self.feature = feature
        self.provider = provider
        super().__init__(f"'{feature}' is not supported by provider '{provider}'")


class StructuredOutputError(PalaverError):
    """A structured-output call failed or returned text that is not JSON."""

    def __init__(self, message: str, raw_text: str = ""):
        self.raw_text = raw_text
        super().__init__(message)
