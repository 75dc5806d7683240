"""Agent CLI process execution, command building and output interpretation."""
