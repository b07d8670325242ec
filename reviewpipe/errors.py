class PipelineError(Exception):
    """Base class for errors surfaced to callers of the pipeline."""


class JobNotFound(PipelineError):
    def __init__(self, job_id: str):
        super().__init__(f"job not found: {job_id}")
        self.job_id = job_id


class TaskNotFound(PipelineError):
    def __init__(self, task_id: str):
        super().__init__(f"task not found: {task_id}")
        self.task_id = task_id


class InvalidTransition(PipelineError):
    """A status change that would regress, or whose expected prior status no longer holds."""


class AnalysisError(Exception):
    """Raised by analyzers. The message text drives retry classification."""
