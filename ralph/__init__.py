"""Ralph - autonomous coding agent supervisor.

Runs an AI coding CLI in repeated, short-lived iterations so that no single
session accumulates enough context to degrade. State lives in files and git,
not in the agent's memory.
"""

__version__ = "0.1.0"
