"""Exception taxonomy for the ingestion pipeline."""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class SourceUnavailable(PipelineError):
    """The remote source could not be reached or kept failing after retries."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ExtractionError(PipelineError):
    """A single record's detail extraction failed."""


class RenderTimeout(ExtractionError):
    """Navigation or rendering did not finish within the configured timeout."""


class RenderEngineUnavailable(ExtractionError):
    """The headless browser could not be started or crashed."""


class IdentityNotRecoverable(ExtractionError):
    """No tax id / year / sequence could be derived from the detail URL."""


class PersistenceFailure(PipelineError):
    """A datastore read or write failed."""


class InvalidTransition(PipelineError):
    """A processing-state change that the state machine does not allow."""
