"""Encode and decode a worker's tree position as a folder name.

Name layout: ``.delegrid_<ROLE>_W<fan-out>_S<sibling>_U<uid:05d>``.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from delegrid.errors import ValidationError
from delegrid.hierarchy.roles import (
    ROOT_ROLE,
    RolePosition,
    lookup_role,
    role_exists,
    subordinate_role,
)

FOLDER_PREFIX = ".delegrid_"
MAX_FAN_OUT = 16
MIN_SIBLING = 1
MIN_UID = 1
MAX_UID = 99_999

_NAME_PATTERN = re.compile(
    rf"^{re.escape(FOLDER_PREFIX)}([A-Z]+)_W(\d+)_S(\d+)_U(\d{{5}})$",
)
_SEPARATORS = re.compile(r"[\\/]+")


@dataclass(frozen=True, slots=True)
class HierarchyIdentity:
    """Decoded position of one worker in the hierarchy."""

    role: str
    fan_out: int
    sibling: int
    uid: int

    @property
    def is_leaf(self) -> bool:
        return self.fan_out == 0

    @property
    def is_ceo(self) -> bool:
        return self.role == ROOT_ROLE

    @property
    def position(self) -> RolePosition | None:
        """Catalog position; None for the root, whose depth needs outside context."""

        return lookup_role(self.role)

    @property
    def depth(self) -> int | None:
        position = self.position
        return position.depth if position is not None else None

    @property
    def layer(self) -> int | None:
        if self.is_ceo:
            return 0
        position = self.position
        return position.layer if position is not None else None

    @property
    def folder_name(self) -> str:
        return encode_identity(self)


def validate_identity_fields(role: str, fan_out: int, sibling: int, uid: int) -> list[str]:
    """Collect every problem with a candidate identity instead of stopping at the first."""

    errors: list[str] = []
    if not role_exists(role):
        errors.append(f"Unknown role code: {role}")
    if not 0 <= fan_out <= MAX_FAN_OUT:
        errors.append(f"Fan-out must be 0..{MAX_FAN_OUT}, got {fan_out}.")
    if sibling < MIN_SIBLING:
        errors.append(f"Sibling index must be >= {MIN_SIBLING}, got {sibling}.")
    if not MIN_UID <= uid <= MAX_UID:
        errors.append(f"Uid must be {MIN_UID}..{MAX_UID}, got {uid}.")
    return errors


def format_folder_name(role: str, fan_out: int, sibling: int, uid: int) -> str:
    errors = validate_identity_fields(role, fan_out, sibling, uid)
    if errors:
        raise ValidationError("; ".join(errors))
    return f"{FOLDER_PREFIX}{role}_W{fan_out}_S{sibling}_U{uid:05d}"


def encode_identity(identity: HierarchyIdentity) -> str:
    return format_folder_name(identity.role, identity.fan_out, identity.sibling, identity.uid)


def parse_folder_name(text: str) -> HierarchyIdentity:
    """Decode a folder name or a path ending in one.

    Raises:
        ValidationError: prefix or layout mismatch, unknown role, or a numeric
            field out of range.
    """

    name = _basename(text)
    match = _NAME_PATTERN.match(name)
    if match is None:
        raise ValidationError(f"Not a hierarchy folder name: {name!r}")

    role, fan_out_text, sibling_text, uid_text = match.groups()
    fan_out = int(fan_out_text)
    sibling = int(sibling_text)
    uid = int(uid_text)
    errors = validate_identity_fields(role, fan_out, sibling, uid)
    if errors:
        raise ValidationError(f"Invalid hierarchy folder name {name!r}: " + "; ".join(errors))
    return HierarchyIdentity(role=role, fan_out=fan_out, sibling=sibling, uid=uid)


def try_parse_folder_name(text: str) -> HierarchyIdentity | None:
    try:
        return parse_folder_name(text)
    except ValidationError:
        return None


def root_folder_name(fan_out: int, uid: int) -> str:
    """The root is unique in its tree, so its sibling index is always 1."""

    return format_folder_name(ROOT_ROLE, fan_out, 1, uid)


def child_folder_name(  # noqa: PLR0913
    parent: HierarchyIdentity,
    role: str,
    fan_out: int,
    sibling: int,
    uid: int,
) -> str:
    """Build a direct subordinate's name, checking the tree edge is legal."""

    if parent.is_leaf:
        raise ValidationError(f"Parent {parent.role} has fan-out 0 and cannot have children.")
    if sibling > parent.fan_out:
        raise ValidationError(
            f"Sibling index {sibling} exceeds parent fan-out {parent.fan_out}.",
        )

    position = lookup_role(role)
    if position is None:
        raise ValidationError(f"Child role must be a known non-root role, got {role}.")
    if parent.is_ceo:
        if position.layer != 1:
            raise ValidationError(
                f"Children of {ROOT_ROLE} must sit at layer 1; "
                f"{role} is at layer {position.layer}.",
            )
    else:
        expected = subordinate_role(parent.role)
        if expected != role:
            raise ValidationError(
                f"Role {role} does not report to {parent.role} (expected {expected}).",
            )
    return format_folder_name(role, fan_out, sibling, uid)


def extract_chain(path: str | Path) -> list[HierarchyIdentity]:
    """Return every identity embedded in the path, root first."""

    chain: list[HierarchyIdentity] = []
    for segment in _SEPARATORS.split(str(path)):
        if not segment.startswith(FOLDER_PREFIX):
            continue
        identity = try_parse_folder_name(segment)
        if identity is not None:
            chain.append(identity)
    return chain


def deepest_identity(path: str | Path) -> HierarchyIdentity | None:
    chain = extract_chain(path)
    return chain[-1] if chain else None


def root_identity(path: str | Path) -> HierarchyIdentity | None:
    chain = extract_chain(path)
    if chain and chain[0].is_ceo:
        return chain[0]
    return None


def infer_depth(chain: Sequence[HierarchyIdentity]) -> int | None:
    """Resolve the hierarchy depth from surrounding identities.

    Any non-root member fixes the depth. A chain holding only a root with
    fan-out 0 is a single-worker hierarchy.
    """

    for identity in chain:
        depth = identity.depth
        if depth is not None:
            return depth
    if len(chain) == 1 and chain[0].is_ceo and chain[0].is_leaf:
        return 1
    return None


def build_worker_path(root: str | Path, ancestors: Sequence[str], name: str) -> Path:
    return Path(root).joinpath(*ancestors, name)


class UidAllocator:
    """Thread-safe in-process uid counter for a single hierarchy build."""

    def __init__(self, start: int = 0) -> None:
        self._lock = threading.Lock()
        self._current = 0
        self.set(start)

    def next(self) -> int:
        with self._lock:
            if self._current >= MAX_UID:
                raise ValidationError(f"Uid space exhausted (max {MAX_UID}).")
            self._current += 1
            return self._current

    def current(self) -> int:
        return self._current

    def reset(self) -> None:
        self.set(0)

    def set(self, value: int) -> None:
        if not 0 <= value <= MAX_UID:
            raise ValidationError(f"Uid counter must be 0..{MAX_UID}, got {value}.")
        with self._lock:
            self._current = value


def _basename(text: str) -> str:
    parts = [part for part in _SEPARATORS.split(text.strip()) if part]
    return parts[-1] if parts else ""
