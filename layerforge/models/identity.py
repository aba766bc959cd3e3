"""Runtime identity model."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator


class RuntimeIdentity(BaseModel):
    """The non-privileged user/group that owns and runs the final artifact."""

    model_config = ConfigDict(frozen=True)

    uid: int
    gid: int
    user: str = "app"
    group: str = "app"
    home: str = "/app"
    shell: str = "/usr/sbin/nologin"

    @field_validator("uid", "gid")
    @classmethod
    def _non_privileged(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("runtime identity must not be the privileged id 0")
        return value

    @property
    def spec(self) -> str:
        """``uid:gid`` form used in image configuration."""
        return f"{self.uid}:{self.gid}"
