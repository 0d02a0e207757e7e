"""Base models and mixins for the agent supervisor."""

from datetime import datetime

from pydantic import BaseModel, Field, field_validator


class TimestampedModel(BaseModel):
    """Base model with timestamp fields."""

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime | None = Field(default=None)

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = datetime.now()


class CommandModel(BaseModel):
    """Base model for commands."""

    command: str = Field(..., description="The executable to run")
    args: list[str] = Field(default_factory=list, description="Command arguments")

    @property
    def full_command(self) -> str:
        """Get the full command with arguments."""
        if self.args:
            return f"{self.command} {' '.join(self.args)}"
        return self.command

    @field_validator("command")
    @classmethod
    def validate_command(cls, v: str) -> str:
        """Ensure command is not empty."""
        if not v or not v.strip():
            raise ValueError("Command cannot be empty")
        return v.strip()
