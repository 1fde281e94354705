from typing import Optional


class ConversionError(Exception):
    """Base for every failure the service reports back to callers."""

    status_code = 500

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class JobNotFound(ConversionError):
    status_code = 404


class InvalidJobId(ConversionError):
    status_code = 400


class InvalidTransition(ConversionError):
    status_code = 409


class InputCardinalityError(ConversionError):
    status_code = 422


class OutputDirectoryError(ConversionError):
    status_code = 500


class ExternalToolError(ConversionError):
    status_code = 502


class PipelineStageError(ConversionError):
    status_code = 500

    def __init__(self, message: str, stage: str, job_id: Optional[str] = None):
        super().__init__(f"{stage}: {message}", job_id=job_id)
        self.stage = stage
