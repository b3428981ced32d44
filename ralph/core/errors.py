"""Exception hierarchy shared across the supervisor."""


class RalphError(Exception):
    """Base error for the supervisor."""

    pass


class ConfigError(RalphError):
    """Configuration file or override is invalid."""

    pass


class TaskFileError(RalphError):
    """Task file cannot be read or written."""

    pass


class AgentLaunchError(RalphError):
    """Agent CLI could not be started."""

    pass


class PrerequisiteError(RalphError):
    """Workspace is not ready for a loop run."""

    pass


class LoopLockedError(RalphError):
    """Another loop already holds the workspace."""

    pass
