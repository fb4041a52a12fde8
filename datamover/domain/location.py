from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class Location:
    """An authenticated source or destination bucket."""

    endpoint: str
    access_key: str
    secret_key: str = field(repr=False)
    bucket: str

    def describe(self) -> dict[str, str]:
        """Loggable view of the location with credentials left out."""
        return {"endpoint": self.endpoint, "bucket": self.bucket}
