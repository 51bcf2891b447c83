"""Thread Dispatch - admission control and scheduling for agent work sessions."""

__version__ = "0.1.0"
