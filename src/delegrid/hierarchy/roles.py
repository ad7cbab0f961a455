"""Static role catalog for hierarchies of depth 1 to 16.

Every depth is an ordered chain of roles: layer 0 is always the root role,
the last layer is always a leaf. The root code repeats at every depth, every
other code appears exactly once in the whole catalog, so a non-root code on
its own identifies both the hierarchy size and the layer.
"""

from __future__ import annotations

from dataclasses import dataclass

from delegrid.errors import ValidationError

ROOT_ROLE = "CEO"
MIN_DEPTH = 1
MAX_DEPTH = 16


@dataclass(frozen=True, slots=True)
class Role:
    """One position within a hierarchy chain."""

    code: str
    title: str


@dataclass(frozen=True, slots=True)
class RolePosition:
    """Where a non-root role code lives in the catalog."""

    depth: int
    layer: int


_ROOT = Role(ROOT_ROLE, "Chief Executive Orchestrator")

_CHAINS: dict[int, tuple[tuple[str, str], ...]] = {
    1: (),
    2: (("EXECOPS", "Execution Operations Associate"),),
    3: (
        ("PROCCTL", "Process Control Manager"),
        ("TASKENG", "Task Engineer"),
    ),
    4: (
        ("STRATOP", "Strategic Operations Director"),
        ("DELIVCO", "Delivery Coordination Lead"),
        ("EXESUPP", "Execution Support Agent"),
    ),
    5: (
        ("LEGALHD", "Head of Legal Affairs"),
        ("COMPRSK", "Compliance and Risk Manager"),
        ("POLICYO", "Policy Officer"),
        ("CASECLR", "Case Clerk"),
    ),
    6: (
        ("CORPGOV", "Corporate Governance Director"),
        ("XDOMAIN", "Cross-Domain Manager"),
        ("DEPOPS", "Department Operations Lead"),
        ("PROCFLO", "Process Flow Coordinator"),
        ("TASKHND", "Task Handler"),
    ),
    7: (
        ("GLOBSTR", "Global Strategy Director"),
        ("ENTPRGM", "Enterprise Program Manager"),
        ("DOMAINM", "Domain Manager"),
        ("FLOWCTL", "Workflow Controller"),
        ("OPSUPRT", "Operations Support Specialist"),
        ("TASKAGN", "Task Agent"),
    ),
    8: (
        ("ITARCH", "IT Architecture Director"),
        ("SYSENG", "Systems Engineering Manager"),
        ("PLATFORM", "Platform Lead"),
        ("INFRALD", "Infrastructure Lead"),
        ("DEVOPS", "DevOps Engineer"),
        ("SRENG", "Site Reliability Engineer"),
        ("TECHOPS", "Technical Operations Agent"),
    ),
    9: (
        ("BRANDHD", "Head of Brand"),
        ("MKTSTR", "Marketing Strategy Manager"),
        ("CAMPMGR", "Campaign Manager"),
        ("CONTENT", "Content Lead"),
        ("COMMSPL", "Communications Specialist"),
        ("ANALYTS", "Marketing Analyst"),
        ("OUTREACH", "Outreach Coordinator"),
        ("SOCIAL", "Social Media Agent"),
    ),
    10: (
        ("EXECCTR", "Executive Control Director"),
        ("ENTERPR", "Enterprise Operations Manager"),
        ("PROGDIR", "Program Director"),
        ("SERVDEL", "Service Delivery Manager"),
        ("WORKADM", "Work Administration Lead"),
        ("OPSCON", "Operations Controller"),
        ("RELIABL", "Reliability Specialist"),
        ("TASKRES", "Task Resolution Agent"),
        ("SUPPORT", "Support Agent"),
    ),
    11: (
        ("POLICYX", "Executive Policy Director"),
        ("PORTFOL", "Portfolio Manager"),
        ("BIZOPS", "Business Operations Manager"),
        ("PROGCO", "Program Coordinator"),
        ("PERFLD", "Performance Lead"),
        ("COMPLY", "Compliance Specialist"),
        ("ENABLE", "Enablement Specialist"),
        ("DISPATCH", "Dispatch Coordinator"),
        ("INTAKE", "Intake Agent"),
        ("TRAINEE", "Trainee Agent"),
    ),
    12: (
        ("EXECCTL", "Executive Controls Director"),
        ("STRATCO", "Strategy Coordination Director"),
        ("CORPSVC", "Corporate Services Manager"),
        ("OVERSGT", "Oversight Manager"),
        ("MULTOPS", "Multi-Team Operations Lead"),
        ("OPTIMZ", "Optimization Lead"),
        ("QUALREV", "Quality Reviewer"),
        ("EXECTRL", "Execution Controller"),
        ("FULFILL", "Fulfillment Specialist"),
        ("DESKHND", "Desk Handler"),
        ("ENTRYIN", "Entry-Level Intake Agent"),
    ),
    13: (
        ("GOVCHAI", "Governance Chair"),
        ("PORTDIR", "Portfolio Director"),
        ("ORGSTR", "Organizational Strategy Manager"),
        ("INTEGRA", "Integration Manager"),
        ("DELIVOP", "Delivery Operations Manager"),
        ("STANDRD", "Standards Lead"),
        ("ASSURE", "Assurance Lead"),
        ("VALIDAT", "Validation Specialist"),
        ("ROUTING", "Routing Specialist"),
        ("INTKASS", "Intake Assistant"),
        ("SERVDSK", "Service Desk Agent"),
        ("TASKTRN", "Task Trainee"),
    ),
    14: (
        ("CMDEXEC", "Command Executive"),
        ("CTRLENT", "Enterprise Control Director"),
        ("INITSTR", "Initiative Strategy Director"),
        ("HLTHPRG", "Program Health Manager"),
        ("DEPOPM", "Department Operations Manager"),
        ("XTCOORD", "Cross-Team Coordinator"),
        ("GOVPROC", "Governance Process Lead"),
        ("QUALCTL", "Quality Control Lead"),
        ("EXESPEC", "Execution Specialist"),
        ("TASKDIST", "Task Distribution Specialist"),
        ("QUEUEHD", "Queue Handler"),
        ("ENTRYOPS", "Entry Operations Agent"),
        ("JUNINTR", "Junior Intern"),
    ),
    15: (
        ("AUTHXEC", "Authority Executive"),
        ("DIRCTEN", "Enterprise Direction Director"),
        ("STRCTL", "Strategic Control Director"),
        ("PORTMGR", "Portfolio Operations Manager"),
        ("SERVOPS", "Service Operations Manager"),
        ("DEPCOOR", "Department Coordinator"),
        ("MGRCTRL", "Management Controller"),
        ("QUALASS", "Quality Assurance Lead"),
        ("MONITOR", "Monitoring Specialist"),
        ("TASKCOA", "Task Coordination Agent"),
        ("ALLOCAT", "Allocation Specialist"),
        ("SUPPORTO", "Support Operations Agent"),
        ("BASINT", "Basic Intern"),
        ("TEMPHLP", "Temporary Helper"),
    ),
    16: (
        ("CMDCHAI", "Command Chair"),
        ("OVRSEER", "Overseer"),
        ("INTEGRT", "Integrity Director"),
        ("STRPORT", "Strategic Portfolio Manager"),
        ("PRGCMND", "Program Commander"),
        ("SERVMGT", "Service Management Lead"),
        ("DEPCTRL", "Department Controller"),
        ("STDPROC", "Standard Procedures Lead"),
        ("QUALSYS", "Quality Systems Specialist"),
        ("ASSUREX", "Assurance Examiner"),
        ("ASSIGN", "Assignment Specialist"),
        ("INTKHND", "Intake Handler"),
        ("DESKTRN", "Desk Trainee"),
        ("TMPSUPP", "Temporary Support Agent"),
        ("ONESHOT", "Single-Task Agent"),
    ),
}

HIERARCHIES: dict[int, tuple[Role, ...]] = {
    depth: (_ROOT, *(Role(code, title) for code, title in chain))
    for depth, chain in _CHAINS.items()
}


def _build_reverse_index() -> dict[str, RolePosition]:
    index: dict[str, RolePosition] = {}
    for depth, roles in HIERARCHIES.items():
        for layer, role in enumerate(roles):
            if role.code == ROOT_ROLE:
                continue
            if role.code in index:
                raise RuntimeError(f"Duplicate role code in catalog: {role.code}")
            index[role.code] = RolePosition(depth=depth, layer=layer)
    return index


_REVERSE_INDEX = _build_reverse_index()


def get_hierarchy(depth: int) -> tuple[Role, ...]:
    """Return the ordered role chain for a hierarchy depth."""

    if depth not in HIERARCHIES:
        raise ValidationError(f"Hierarchy depth must be {MIN_DEPTH}..{MAX_DEPTH}, got {depth}.")
    return HIERARCHIES[depth]


def get_role(depth: int, layer: int) -> Role | None:
    roles = HIERARCHIES.get(depth)
    if roles is None or layer < 0 or layer >= len(roles):
        return None
    return roles[layer]


def lookup_role(code: str) -> RolePosition | None:
    """Reverse lookup of a non-root role code.

    The root code is deliberately absent: it sits at layer 0 of every depth,
    so it cannot identify a hierarchy on its own.
    """

    return _REVERSE_INDEX.get(code)


def role_exists(code: str) -> bool:
    return code == ROOT_ROLE or code in _REVERSE_INDEX


def role_title(code: str) -> str | None:
    if code == ROOT_ROLE:
        return _ROOT.title
    position = _REVERSE_INDEX.get(code)
    if position is None:
        return None
    return HIERARCHIES[position.depth][position.layer].title


def can_delegate(code: str, depth: int | None = None) -> bool:
    """Return True when the role has a subordinate layer."""

    if code == ROOT_ROLE:
        return depth is not None and depth > 1
    position = _REVERSE_INDEX.get(code)
    if position is None:
        return False
    return position.layer < position.depth - 1


def subordinate_role(code: str, depth: int | None = None) -> str | None:
    """Return the code one layer below, or None for leaves and unknown codes."""

    if code == ROOT_ROLE:
        if depth is None:
            return None
        role = get_role(depth, 1)
        return role.code if role is not None else None
    position = _REVERSE_INDEX.get(code)
    if position is None:
        return None
    role = get_role(position.depth, position.layer + 1)
    return role.code if role is not None else None


def parent_role(code: str) -> str | None:
    """Return the code one layer above; the root has no parent."""

    if code == ROOT_ROLE:
        return None
    position = _REVERSE_INDEX.get(code)
    if position is None:
        return None
    role = get_role(position.depth, position.layer - 1)
    return role.code if role is not None else None


def validate_fan_out(code: str, fan_out: int, depth: int | None = None) -> list[str]:
    """Check that a fan-out is consistent with the role's place in its chain."""

    errors: list[str] = []
    if not role_exists(code):
        return [f"Unknown role code: {code}"]
    if code == ROOT_ROLE:
        if depth == 1 and fan_out != 0:
            errors.append("A root without subordinates (depth 1) must have fan-out 0.")
        elif depth is not None and depth > 1 and fan_out <= 0:
            errors.append("A root with subordinates must have fan-out > 0.")
        return errors

    if can_delegate(code):
        if fan_out <= 0:
            errors.append(f"Role {code} manages a subordinate layer and needs fan-out > 0.")
    elif fan_out != 0:
        errors.append(f"Role {code} is a leaf and must have fan-out 0.")
    return errors
