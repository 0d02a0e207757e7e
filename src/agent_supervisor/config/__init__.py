"""Configuration management for the agent supervisor."""

from agent_supervisor.config.settings import SupervisorSettings, load_settings

__all__ = ["SupervisorSettings", "load_settings"]
