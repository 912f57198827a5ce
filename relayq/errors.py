"""Exception hierarchy shared by the store, the queues and the CLI."""


class RelayError(Exception):
    pass


class ValidationError(RelayError, ValueError):
    """Bad job input; the job is never persisted."""


class ParseError(RelayError, ValueError):
    """Unrecognized time expression."""


class ExecutionError(RelayError):
    """An executor could not deliver/trigger a job. Drives retry/backoff."""


class NotFoundError(RelayError, LookupError):
    def __init__(self, kind: str, job_id: int):
        super().__init__(f"{kind} job {job_id} not found")
        self.kind = kind
        self.job_id = job_id


class StateConflictError(RelayError):
    def __init__(self, job_id: int, status: str, action: str):
        super().__init__(f"Cannot {action} job {job_id} with status {status!r}")
        self.job_id = job_id
        self.status = status
        self.action = action


class StoreError(RelayError, RuntimeError):
    """Durable storage failed. Never retried by the queue engine."""
