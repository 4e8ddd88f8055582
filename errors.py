# errors.py


class SchedulerError(Exception):
    """Base class for everything schedctl raises on purpose."""


class SubmissionError(SchedulerError):
    """Invalid name, missing command, or a name that is already queued/running."""


class LaunchError(SchedulerError):
    """The OS refused to create the job's process."""

    def __init__(self, job_name, reason):
        super().__init__(f"failed to launch {job_name}: {reason}")
        self.job_name = job_name
        self.reason = reason


class LivenessAmbiguity(SchedulerError):
    """The reaper could not tell whether a job's process is still alive."""

    def __init__(self, job_name, pid, reason):
        super().__init__(f"cannot determine liveness of {job_name} (pid {pid}): {reason}")
        self.job_name = job_name
        self.pid = pid
        self.reason = reason


class ConfigurationError(SchedulerError):
    pass


class JobNotFoundError(SchedulerError):
    pass
