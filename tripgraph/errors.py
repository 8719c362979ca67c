"""Exceptions raised inside pipeline stages."""


class PipelineError(Exception):
    """Base class for pipeline failures."""


class DatasetFetchError(PipelineError):
    """Upstream dataset could not be fetched or parsed."""


class PersistenceError(PipelineError):
    """A durable or cache tier write failed."""


class GraphValidationError(PipelineError):
    """Assembled graph failed a hard validation check."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__(f"Graph validation failed: {'; '.join(self.errors)}")
