"""
Typed view of a Proxmox LXC configuration file (``/etc/pve/lxc/<id>.conf``).

Lines are parsed into directives once, filtered by kind and serialized back.
Only the main section is edited; snapshot and pending sections (everything
from the first ``[name]`` header on) are carried through verbatim.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Set, Tuple

from phoenix_orchestrator.core.models import CgroupRule, DeviceDescriptor, PassthroughPlan

CGROUP_ALLOW_KEYS = ("lxc.cgroup2.devices.allow", "lxc.cgroup.devices.allow")
CGROUP_ALLOW_KEY = "lxc.cgroup2.devices.allow"
MOUNT_ENTRY_KEY = "lxc.mount.entry"
ACCELERATOR_PATH_PREFIXES = ("/dev/nvidia", "/dev/dri")
PASSTHROUGH_TAG = "phoenix-passthrough"

# nvidia (195), drm (226), and the dynamic majors the uvm/caps drivers usually get.
KNOWN_ACCELERATOR_MAJORS = frozenset({195, 226, 234, 235, 236, 237})

_SECTION_RE = re.compile(r"^\[[^\]]+\]\s*$")
# Proxmox keeps '#' lines as the container description and may move them to the top.
_TAG_RE = re.compile(r"^#\s*" + re.escape(PASSTHROUGH_TAG) + r"\b(.*)$")
_DEV_KEY_RE = re.compile(r"^dev\d+$")
_CGROUP_VALUE_RE = re.compile(r"^([cb])\s+(\d+|\*):(\d+|\*)(?:\s+\S+)?$")


class DirectiveKind(str, Enum):
    CGROUP_ALLOW = "cgroup_allow"
    MOUNT_ENTRY = "mount_entry"
    DEVICE = "device"
    PASSTHROUGH_TAG = "passthrough_tag"
    SETTING = "setting"
    COMMENT = "comment"
    BLANK = "blank"


@dataclass(frozen=True)
class Directive:
    kind: DirectiveKind
    raw: str
    key: str = ""
    value: str = ""
    device_type: Optional[str] = None
    major: Optional[int] = None
    source: Optional[str] = None
    tagged_majors: Tuple[int, ...] = ()

    @classmethod
    def parse(cls, line: str) -> "Directive":
        stripped = line.strip()
        if not stripped:
            return cls(DirectiveKind.BLANK, line)
        if stripped.startswith("#"):
            tag = _TAG_RE.match(stripped)
            if tag:
                majors = tuple(sorted({int(m) for m in re.findall(r"\d+", tag.group(1))}))
                return cls(DirectiveKind.PASSTHROUGH_TAG, line, tagged_majors=majors)
            return cls(DirectiveKind.COMMENT, line)
        sep = ":" if ":" in stripped and ("=" not in stripped or stripped.index(":") < stripped.index("=")) else "="
        key, _, value = stripped.partition(sep)
        key, value = key.strip(), value.strip()

        if key in CGROUP_ALLOW_KEYS:
            m = _CGROUP_VALUE_RE.match(value)
            if m:
                major = None if m.group(2) == "*" else int(m.group(2))
                return cls(DirectiveKind.CGROUP_ALLOW, line, key, value, device_type=m.group(1), major=major)
            return cls(DirectiveKind.CGROUP_ALLOW, line, key, value)
        if key == MOUNT_ENTRY_KEY:
            source = value.split()[0] if value else None
            return cls(DirectiveKind.MOUNT_ENTRY, line, key, value, source=source)
        if _DEV_KEY_RE.match(key):
            source = value.split(",")[0].strip() if value else None
            return cls(DirectiveKind.DEVICE, line, key, value, source=source)
        return cls(DirectiveKind.SETTING, line, key, value)

    @classmethod
    def cgroup_allow(cls, rule: CgroupRule) -> "Directive":
        value = rule.render()
        return cls(DirectiveKind.CGROUP_ALLOW, f"{CGROUP_ALLOW_KEY}: {value}", CGROUP_ALLOW_KEY, value,
                   device_type="c", major=rule.major)

    @classmethod
    def mount_entry(cls, device: DeviceDescriptor) -> "Directive":
        value = device.render_mount()
        return cls(DirectiveKind.MOUNT_ENTRY, f"{MOUNT_ENTRY_KEY}: {value}", MOUNT_ENTRY_KEY, value,
                   source=device.host_path)

    @classmethod
    def passthrough_tag(cls, majors: Iterable[int]) -> "Directive":
        ordered = tuple(sorted(set(majors)))
        raw = f"#{PASSTHROUGH_TAG} {','.join(str(m) for m in ordered)}"
        return cls(DirectiveKind.PASSTHROUGH_TAG, raw, tagged_majors=ordered)

    def is_passthrough(self, majors: Set[int]) -> bool:
        """True for directives a previous passthrough application wrote."""
        if self.kind is DirectiveKind.PASSTHROUGH_TAG:
            return True
        if self.kind is DirectiveKind.CGROUP_ALLOW:
            return self.device_type == "c" and self.major is not None and self.major in majors
        if self.kind in (DirectiveKind.MOUNT_ENTRY, DirectiveKind.DEVICE):
            return bool(self.source) and self.source.startswith(ACCELERATOR_PATH_PREFIXES)
        return False


class LxcConfig:
    """Main-section directives plus the untouched section tail."""

    def __init__(self, directives: List[Directive], tail: Optional[List[str]] = None) -> None:
        self.directives = directives
        self.tail = tail or []

    @classmethod
    def parse(cls, text: str) -> "LxcConfig":
        directives: List[Directive] = []
        tail: List[str] = []
        lines = text.splitlines()
        for i, line in enumerate(lines):
            if _SECTION_RE.match(line.strip()):
                tail = lines[i:]
                break
            directives.append(Directive.parse(line))
        return cls(directives, tail)

    def render(self) -> str:
        body = [d.raw for d in self.directives]
        while body and not body[-1].strip():
            body.pop()
        if self.tail:
            if body:
                body.append("")
            body.extend(self.tail)
        return "\n".join(body) + "\n" if body else ""

    def tagged_majors(self) -> Set[int]:
        """Majors recorded by earlier passthrough applications."""
        out: Set[int] = set()
        for d in self.directives:
            if d.kind is DirectiveKind.PASSTHROUGH_TAG:
                out.update(d.tagged_majors)
        return out

    def _passthrough_majors(self, majors: Iterable[int]) -> Set[int]:
        return set(KNOWN_ACCELERATOR_MAJORS) | self.tagged_majors() | set(majors)

    def passthrough_directives(self, majors: Iterable[int] = ()) -> List[Directive]:
        known = self._passthrough_majors(majors)
        return [d for d in self.directives if d.is_passthrough(known)]

    def without_passthrough(self, majors: Iterable[int] = ()) -> "LxcConfig":
        known = self._passthrough_majors(majors)
        kept = [d for d in self.directives if not d.is_passthrough(known)]
        return LxcConfig(kept, list(self.tail))

    def with_plan(self, plan: PassthroughPlan, stale_majors: Iterable[int] = ()) -> "LxcConfig":
        """Replace every passthrough directive with the ones ``plan`` needs.

        ``stale_majors`` names extra device classes whose grants should be
        dropped, e.g. the current majors of accelerator nodes already mounted.
        """
        base = self.without_passthrough({r.major for r in plan.cgroup_rules} | set(stale_majors))
        directives = list(base.directives)
        while directives and directives[-1].kind is DirectiveKind.BLANK:
            directives.pop()
        if plan.cgroup_rules:
            directives.append(Directive.passthrough_tag(r.major for r in plan.cgroup_rules))
        directives.extend(Directive.cgroup_allow(rule) for rule in plan.sorted_rules())
        directives.extend(Directive.mount_entry(device) for device in plan.mount_entries)
        return LxcConfig(directives, list(base.tail))

    def get(self, key: str) -> Optional[str]:
        for d in self.directives:
            if d.kind is DirectiveKind.SETTING and d.key == key:
                return d.value
        return None


__all__ = [
    "LxcConfig",
    "Directive",
    "DirectiveKind",
    "KNOWN_ACCELERATOR_MAJORS",
    "ACCELERATOR_PATH_PREFIXES",
    "PASSTHROUGH_TAG",
]
