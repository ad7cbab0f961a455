from __future__ import annotations

import threading

import allure
import pytest

from delegrid.errors import ValidationError
from delegrid.hierarchy.identity import (
    MAX_UID,
    HierarchyIdentity,
    UidAllocator,
    build_worker_path,
    child_folder_name,
    deepest_identity,
    extract_chain,
    format_folder_name,
    infer_depth,
    parse_folder_name,
    root_folder_name,
    root_identity,
    try_parse_folder_name,
)

pytestmark = [
    allure.epic("Hierarchy"),
    allure.feature("Worker Identity Codec"),
]


def test_format_and_parse_folder_name() -> None:
    name = format_folder_name("PROCCTL", 3, 2, 42)
    assert name == ".delegrid_PROCCTL_W3_S2_U00042"

    identity = parse_folder_name(name)
    assert identity == HierarchyIdentity(role="PROCCTL", fan_out=3, sibling=2, uid=42)
    assert identity.folder_name == name
    assert identity.depth == 3
    assert identity.layer == 1
    assert not identity.is_leaf
    assert not identity.is_ceo


def test_parse_accepts_paths_with_either_separator() -> None:
    posix = parse_folder_name("/work/.delegrid_CEO_W2_S1_U00001/.delegrid_EXECOPS_W0_S1_U00002")
    windows = parse_folder_name(r"C:\work\.delegrid_EXECOPS_W0_S1_U00002")
    assert posix == windows
    assert posix.is_leaf


@pytest.mark.parametrize(
    "name",
    [
        "delegrid_CEO_W1_S1_U00001",
        ".delegrid_CEO_W1_S1_U1",
        ".delegrid_ceo_W1_S1_U00001",
        ".delegrid_NOPE_W1_S1_U00001",
        ".delegrid_CEO_W17_S1_U00001",
        ".delegrid_CEO_W1_S0_U00001",
        ".delegrid_CEO_W1_S1_U00000",
        "",
    ],
)
def test_parse_rejects_malformed_names(name: str) -> None:
    with pytest.raises(ValidationError):
        parse_folder_name(name)
    assert try_parse_folder_name(name) is None


def test_format_reports_every_invalid_field() -> None:
    with pytest.raises(ValidationError) as error:
        format_folder_name("NOPE", 99, 0, MAX_UID + 1)
    message = str(error.value)
    assert "Unknown role code" in message
    assert "Fan-out" in message
    assert "Sibling" in message
    assert "Uid" in message


def test_root_identity_depth_needs_context() -> None:
    root = parse_folder_name(root_folder_name(4, 1))
    assert root.is_ceo
    assert root.layer == 0
    assert root.depth is None
    assert infer_depth([root]) is None

    lone_root = parse_folder_name(root_folder_name(0, 1))
    assert infer_depth([lone_root]) == 1


def test_child_names_follow_delegation_edges() -> None:
    root = parse_folder_name(root_folder_name(2, 1))
    manager_name = child_folder_name(root, "PROCCTL", 2, 1, 2)
    manager = parse_folder_name(manager_name)
    leaf_name = child_folder_name(manager, "TASKENG", 0, 2, 3)
    assert leaf_name == ".delegrid_TASKENG_W0_S2_U00003"

    with pytest.raises(ValidationError, match="does not report"):
        child_folder_name(manager, "EXECOPS", 0, 1, 4)
    with pytest.raises(ValidationError, match="layer 1"):
        child_folder_name(root, "TASKENG", 0, 1, 5)
    with pytest.raises(ValidationError, match="exceeds parent fan-out"):
        child_folder_name(manager, "TASKENG", 0, 3, 6)
    with pytest.raises(ValidationError, match="cannot have children"):
        child_folder_name(parse_folder_name(leaf_name), "TASKENG", 0, 1, 7)


def test_extract_chain_skips_foreign_segments() -> None:
    path = build_worker_path(
        "/srv/project",
        [".delegrid_CEO_W1_S1_U00001", "scratch", ".delegrid_bogus"],
        ".delegrid_EXECOPS_W0_S1_U00002",
    )
    chain = extract_chain(path)
    assert [identity.uid for identity in chain] == [1, 2]
    assert infer_depth(chain) == 2
    assert root_identity(path).uid == 1
    assert deepest_identity(path).role == "EXECOPS"
    assert root_identity("/srv/.delegrid_EXECOPS_W0_S1_U00002") is None
    assert extract_chain("/tmp/nothing/here") == []


def test_uid_allocator_is_thread_safe_and_bounded() -> None:
    allocator = UidAllocator()
    seen: list[int] = []
    lock = threading.Lock()

    def _take() -> None:
        for _ in range(50):
            uid = allocator.next()
            with lock:
                seen.append(uid)

    threads = [threading.Thread(target=_take) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(seen) == list(range(1, 201))
    assert allocator.current() == 200

    allocator.set(MAX_UID)
    with pytest.raises(ValidationError):
        allocator.next()
    allocator.reset()
    assert allocator.next() == 1
    with pytest.raises(ValidationError):
        allocator.set(-1)
