"""Lanes: which prefix of the stage order a run executes and where it ships."""

from __future__ import annotations

from dataclasses import dataclass

from ship.pipeline.model import STAGE_ORDER, Destination, Stage

__all__ = ["LANES", "Lane", "get_lane"]


@dataclass(frozen=True, slots=True)
class Lane:
    name: str
    stages: tuple[Stage, ...]
    destination: Destination | None = None
    description: str = ""

    @property
    def uploads(self) -> bool:
        return Stage.UPLOADING in self.stages


LANES: dict[str, Lane] = {
    "release": Lane(
        name="release",
        stages=STAGE_ORDER,
        destination="review",
        description="Build, upload and attach to the App Store version in preparation",
    ),
    "beta": Lane(
        name="beta",
        stages=STAGE_ORDER,
        destination="beta",
        description="Build and upload for beta testing",
    ),
    "build-only": Lane(
        name="build-only",
        stages=STAGE_ORDER[:3],
        description="Authenticate, sync signing and build; keep the artifact locally",
    ),
}


def get_lane(name: str) -> Lane | None:
    return LANES.get(name)
