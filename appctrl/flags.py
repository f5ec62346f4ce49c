"""
Restricted command surface for the kapp deploy tool.

Raw options come from the App CR (spec.deploy[].kapp.rawOptions) but are
executed by a binary with cluster-admin-adjacent access. Only flags listed
here may be passed through; anything else rejects the whole invocation.
Values are not validated, that is left to kapp itself.
"""
from enum import Enum
from typing import Iterable, Sequence

from appctrl.errors import FlagNotAllowedError


class Operation(str, Enum):
    DEPLOY = "deploy"
    INSPECT = "inspect"
    DELETE = "delete"


class FlagSet:
    """Immutable union of allowed flag names."""

    def __init__(self, *groups: Iterable[str]):
        self._flags = frozenset(flag for group in groups for flag in group)

    def __contains__(self, flag: str) -> bool:
        return flag in self._flags

    def __len__(self) -> int:
        return len(self._flags)

    def __repr__(self) -> str:
        return f"FlagSet({sorted(self._flags)})"


KAPP_ALLOWED_SHARED_OPTS = (
    # Globals
    "--column",
    "--debug",
    "--json",
    "--tty",

    "--dangerous-ignore-failing-api-services",
    "--dangerous-scope-to-fallback-allowed-namespaces",

    # Filtering
    "--filter",
    "--filter-age",
    "--filter-kind",
    "--filter-kind-name",
    "--filter-kind-ns",
    "--filter-kind-ns-name",
    "--filter-name",
    "--filter-ns",

    "--kube-api-qps",
    "--kube-api-burst",
)

KAPP_ALLOWED_CHANGE_OPTS = (
    # Diffing
    "--diff-changes",
    "--diff-against-last-applied",
    "--diff-context",
    "--diff-line-numbers",
    "--diff-mask",
    "--diff-run",
    "--diff-summary",

    # Applying
    "--apply-check-interval",
    "--apply-concurrency",
    "--apply-default-update-strategy",
    "--apply-ignored",
    "--apply-timeout",

    # Waiting
    "--wait",
    "--wait-check-interval",
    "--wait-concurrency",
    "--wait-ignored",
    "--wait-timeout",
)

KAPP_ALLOWED_DEPLOY_FLAGS = FlagSet(KAPP_ALLOWED_SHARED_OPTS, KAPP_ALLOWED_CHANGE_OPTS, (
    "--dangerous-allow-empty-list-of-resources",
    "--dangerous-override-ownership-of-existing-resources",

    "--into-ns",
    "--map-ns",

    "--logs",
    "--logs-all",

    "--app-changes-max-to-keep",

    "--labels",
    "--patch",
))

KAPP_ALLOWED_INSPECT_FLAGS = FlagSet(KAPP_ALLOWED_SHARED_OPTS, (
    "--raw",
    "--status",
    "--tree",
))

KAPP_ALLOWED_DELETE_FLAGS = FlagSet(KAPP_ALLOWED_SHARED_OPTS, KAPP_ALLOWED_CHANGE_OPTS)

ALLOWED_FLAGS = {
    Operation.DEPLOY: KAPP_ALLOWED_DEPLOY_FLAGS,
    Operation.INSPECT: KAPP_ALLOWED_INSPECT_FLAGS,
    Operation.DELETE: KAPP_ALLOWED_DELETE_FLAGS,
}


def flag_name(opt: str) -> str:
    """'--wait-timeout=5m' -> '--wait-timeout'"""
    return opt.split("=", 1)[0]


def build_invocation(operation: Operation, flags: Sequence[str]) -> list[str]:
    """
    Check user-supplied raw options against the allow-list of an operation.

    Returns the options unchanged when every flag is allowed. A token that
    does not start with '-' is treated as the value of the preceding flag
    and is only accepted directly after an allowed flag given without '='.
    Raises FlagNotAllowedError naming the first offending option.
    """
    operation = Operation(operation)
    allowed = ALLOWED_FLAGS[operation]
    expecting_value = False

    for opt in flags:
        if not opt.startswith("-"):
            if not expecting_value:
                raise FlagNotAllowedError(opt, operation.value, "is a value without a preceding flag")
            expecting_value = False
            continue

        name = flag_name(opt)
        if name not in allowed:
            raise FlagNotAllowedError(name, operation.value)
        expecting_value = "=" not in opt

    return list(flags)
