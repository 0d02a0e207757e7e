"""Network location of a supervised agent."""

from pydantic import BaseModel, ConfigDict, Field, computed_field


class AgentEndpoint(BaseModel):
    """Where a launched agent listens. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(..., min_length=1)
    port: int = Field(..., ge=1, le=65535)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def base_url(self) -> str:
        """Get the HTTP base URL of the agent."""
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    def __str__(self) -> str:
        return self.base_url
