"""Exception types raised by the job queue."""


class JobQueueError(Exception):
    """Base class for all job queue errors."""


class AdmissionError(JobQueueError, ValueError):
    """A job was rejected at admission. Nothing was written."""


class StoreError(JobQueueError):
    """The backing store failed an operation."""


class StoreUnavailableError(StoreError, ConnectionError):
    """The backing store could not be reached."""
