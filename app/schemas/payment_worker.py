from pydantic import BaseModel


class RunResultOut(BaseModel):
    ran: bool
    processed: int
    succeeded: int
    retried: int
    failed: int


class WorkerStatsOut(BaseModel):
    pending: int
    queued: int
    processing: int
    paid_today: int
    failed_today: int
    api_retry: int


class RetryFailedOut(BaseModel):
    readmitted: int


class ExpireLocksOut(BaseModel):
    expired: int
    max_age_minutes: int


class RequeueOrphanedOut(BaseModel):
    ran: bool
    requeued: int
