"""Capability discovery for the agent CLI: presence, models, plugins and agents."""
