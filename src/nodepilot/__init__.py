"""Run the Copilot agent CLI as a sandboxed, observable child process."""

__version__ = "0.1.0"
