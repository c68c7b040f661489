"""Platform segmentation of prerequisite chains.

Splits a chain into maximal runs of steps that execute on the same
(normalised) platform, and decides which runs still need work.

Usage::

    from tplan.engine.segments import PlatformSegmenter

    segmenter = PlatformSegmenter()
    segments = segmenter.segment(analysis.chain, test_data, descriptor)
    pending = PlatformSegmenter.first_incomplete(segments)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from tplan.engine.requirements import get_nested, strict_equal

if TYPE_CHECKING:
    from tplan.engine.chain import ChainStep
    from tplan.engine.descriptor import Descriptor

UNKNOWN_PLATFORM = "unknown"

DEFAULT_PLATFORM_ALIASES: dict[str, str] = {
    "playwright": "web",
    "web": "web",
    "cms": "web",
    "clubapp": "club",
    "club": "club",
}

_FILENAME_MARKERS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("-ClubApp-", "-Club-", "-Manager-"), "club"),
    (("-Dancer-",), "dancer"),
    (("-Web-", "-Playwright-", "-CMS-"), "web"),
)


def normalize_platform(
    platform: str | None, aliases: Mapping[str, str] | None = None
) -> str:
    """Return the canonical platform key for *platform*."""
    if not platform:
        return UNKNOWN_PLATFORM
    key = platform.lower()
    if aliases:
        for alias, canonical in aliases.items():
            if alias.lower() == key:
                return canonical
    return DEFAULT_PLATFORM_ALIASES.get(key, key)


def detect_platform_from_filename(test_file: str | None) -> str | None:
    """Infer the platform from markers such as ``-Web-`` in a test file name."""
    if not test_file:
        return None
    basename = Path(test_file).name
    for markers, platform in _FILENAME_MARKERS:
        if any(marker in basename for marker in markers):
            return platform
    return None


@dataclass
class Segment:
    """A maximal contiguous run of same-platform chain steps."""

    platform: str
    steps: list["ChainStep"] = field(default_factory=list)
    complete: bool = True

    @property
    def pending_steps(self) -> list["ChainStep"]:
        """Incomplete steps other than the target, in chain order."""
        return [s for s in self.steps if not s.complete and not s.is_target]

    @property
    def statuses(self) -> list[str]:
        return [s.status for s in self.steps]


class PlatformSegmenter:
    """Groups chains into platform segments.

    Args:
        aliases: Extra platform aliases merged over the built-in ones.
    """

    def __init__(self, aliases: Mapping[str, str] | None = None) -> None:
        self._aliases = dict(aliases or {})

    def normalize(self, platform: str | None) -> str:
        return normalize_platform(platform, self._aliases)

    def same_platform(self, a: str | None, b: str | None) -> bool:
        return self.normalize(a) == self.normalize(b)

    def segment(
        self,
        chain: Sequence["ChainStep"],
        test_data: Mapping[str, Any] | None = None,
        descriptor: "Descriptor | None" = None,
    ) -> list[Segment]:
        """Partition *chain* into segments and compute their completeness.

        When *descriptor* and *test_data* are given, a segment that looks
        complete is reopened if an unmet entity boolean requirement of the
        descriptor belongs to an entity represented in that segment.
        """
        segments: list[Segment] = []
        current: Segment | None = None
        for step in chain:
            platform = self.normalize(step.platform)
            if current is None or current.platform != platform:
                current = Segment(platform=platform)
                segments.append(current)
            current.steps.append(step)
            if not step.complete:
                current.complete = False

        if descriptor is not None and test_data is not None:
            unmet = _unmet_entities(descriptor, test_data)
            for seg in segments:
                if seg.complete and any(_segment_has_entity(seg, e) for e in unmet):
                    seg.complete = False
        return segments

    @staticmethod
    def first_incomplete(segments: Sequence[Segment]) -> Segment | None:
        for seg in segments:
            if not seg.complete:
                return seg
        return None


def _unmet_entities(descriptor: "Descriptor", test_data: Mapping[str, Any]) -> list[str]:
    entities: list[str] = []
    for name, expected in descriptor.requires.items():
        if name == "previousStatus" or name.startswith("!") or "." not in name:
            continue
        if not isinstance(expected, bool):
            continue
        if not strict_equal(expected, get_nested(test_data, name)):
            entities.append(name.split(".", 1)[0])
    return entities


def _segment_has_entity(segment: Segment, entity: str) -> bool:
    return any(s.entity == entity or entity in s.status for s in segment.steps)
