class PipelineError(Exception):
    """Base class for errors raised by the processing pipeline and search."""


class NotFoundError(PipelineError):
    """Unknown screenshot or content, or one the caller does not own."""


class InvalidInputError(PipelineError):
    """Missing ids, empty queries, or nothing to embed."""


class AdapterError(PipelineError):
    """A vision, embedding or storage call failed or returned unusable output."""


class StoreError(PipelineError):
    """A content store read or write failed."""
