"""
Safety validator for every cluster-facing call.

All kubectl invocations are built here and nowhere else. Read requests are
checked against a fixed whitelist of read-only operations and per-operation
flags; mutating commands must match, exactly, a command that was surfaced to
and approved by the caller. The result is a pre-bound argv tuple that is
handed to ``create_subprocess_exec`` unchanged, so no shell ever sees model
output.

Pure and synchronous: no I/O, no logging, no settings lookups other than the
log tail default.
"""

import re
import shlex
from dataclasses import dataclass
from enum import Enum
from typing import Collection, Optional, Union

from .config import settings
from .models import DataRequest


class RejectionReason(str, Enum):
    UNSUPPORTED_OPERATION = "unsupported_operation"
    UNAPPROVED_COMMAND = "unapproved_command"
    INVALID_ARGUMENT = "invalid_argument"
    MALFORMED_COMMAND = "malformed_command"


SAFE_OPERATIONS = frozenset({"get", "describe", "logs", "events", "top", "explain"})

OPERATION_ALIASES = {
    "resource-usage": "top",
    "explain-schema": "explain",
}

ALLOWED_FLAGS: dict[str, frozenset[str]] = {
    "get": frozenset(
        {
            "-l",
            "--selector",
            "--field-selector",
            "-A",
            "--all-namespaces",
            "--show-labels",
            "-o",
            "--output",
            "--sort-by",
        }
    ),
    "describe": frozenset({"-l", "--selector", "-A", "--all-namespaces"}),
    "logs": frozenset(
        {
            "-c",
            "--container",
            "-p",
            "--previous",
            "--tail",
            "--since",
            "--since-time",
            "--timestamps",
            "--all-containers",
            "-l",
            "--selector",
            "--limit-bytes",
        }
    ),
    "events": frozenset({"--field-selector", "--sort-by", "-A", "--all-namespaces"}),
    "top": frozenset({"-l", "--selector", "--containers", "--sort-by", "-A", "--all-namespaces"}),
    "explain": frozenset({"--recursive", "--api-version"}),
}

VALUE_FLAGS = frozenset(
    {
        "-l",
        "--selector",
        "--field-selector",
        "-o",
        "--output",
        "--sort-by",
        "-c",
        "--container",
        "--tail",
        "--since",
        "--since-time",
        "--limit-bytes",
        "--api-version",
    }
)

GET_OUTPUT_FORMATS = frozenset({"yaml", "json", "wide", "name"})
TOP_KINDS = frozenset({"pod", "pods", "po", "node", "nodes", "no"})
SECRET_KINDS = frozenset({"secret", "secrets"})

READ_VERBS = frozenset({"get", "describe", "logs", "top", "explain", "events", "api-resources"})

DRY_RUN_VERBS = frozenset(
    {
        "apply",
        "create",
        "delete",
        "patch",
        "replace",
        "scale",
        "label",
        "annotate",
        "set",
        "taint",
        "cordon",
        "uncordon",
        "drain",
        "autoscale",
        "expose",
    }
)

# Flags that would point a command at a different cluster or identity.
IDENTITY_FLAGS = frozenset(
    {
        "--kubeconfig",
        "--context",
        "--cluster",
        "--server",
        "-s",
        "--user",
        "--token",
        "--as",
        "--as-group",
        "--as-uid",
        "--certificate-authority",
        "--client-certificate",
        "--client-key",
        "--insecure-skip-tls-verify",
    }
)

SHELL_OPERATORS = frozenset({"|", "||", "&", "&&", ";", ">", ">>", "<", "<<", "2>&1"})

_RESOURCE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._/,:-]{0,252}$")
_NAMESPACE_RE = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f]")


@dataclass(frozen=True)
class SafeInvocation:
    """A validated kubectl call: argv without the ``kubectl`` prefix."""

    argv: tuple[str, ...]
    mutating: bool = False
    stdin: Optional[str] = None

    @property
    def display(self) -> str:
        return shlex.join(("kubectl",) + self.argv)


@dataclass(frozen=True)
class Rejection:
    """A refused request, fed back to the model as learning signal."""

    reason: RejectionReason
    message: str
    command: str = ""


class _InvalidArgument(ValueError):
    pass


def normalise_operation(operation_type: str) -> str:
    op = (operation_type or "").strip().lower()
    return OPERATION_ALIASES.get(op, op)


def describe_request(request: DataRequest) -> str:
    """Human-readable form of a request, used for rejected entries."""
    parts = ["kubectl", request.operation_type or "?"]
    if request.resource:
        parts.append(request.resource)
    if request.namespace:
        parts.extend(["-n", request.namespace])
    parts.extend(str(a) for a in request.args)
    return " ".join(parts)


def _normalise_args(operation: str, args: list[str]) -> list[str]:
    """Check model-supplied flags against the operation's whitelist."""
    allowed = ALLOWED_FLAGS[operation]
    out: list[str] = []
    i = 0
    while i < len(args):
        token = str(args[i]).strip()
        if not token.startswith("-"):
            raise _InvalidArgument(f"unexpected positional argument '{token}'")
        name, sep, value = token.partition("=")
        if name not in allowed:
            raise _InvalidArgument(f"flag '{name}' is not allowed for {operation}")

        if name in VALUE_FLAGS:
            if not sep:
                if i + 1 >= len(args) or str(args[i + 1]).startswith("-"):
                    raise _InvalidArgument(f"flag '{name}' requires a value")
                i += 1
                value = str(args[i]).strip()
            if not value or _CONTROL_CHARS_RE.search(value):
                raise _InvalidArgument(f"invalid value for flag '{name}'")
            if name.startswith("--"):
                out.append(f"{name}={value}")
            else:
                out.extend([name, value])
        else:
            if sep and value.lower() not in ("true", "false"):
                raise _InvalidArgument(f"flag '{name}' takes no value")
            out.append(token)
        i += 1
    return out


def _flag_value(args: list[str], *names: str) -> Optional[str]:
    for i, token in enumerate(args):
        name, sep, value = token.partition("=")
        if name in names:
            if sep:
                return value
            if i + 1 < len(args):
                return args[i + 1]
    return None


def _has_flag(args: list[str], *names: str) -> bool:
    return any(token.partition("=")[0] in names for token in args)


def _build_argv(
    operation: str, resource: str, namespace: Optional[str], args: list[str]
) -> list[str]:
    ns = ["-n", namespace] if namespace else []

    if operation == "get":
        output = _flag_value(args, "-o", "--output")
        if output is not None and output not in GET_OUTPUT_FORMATS:
            raise _InvalidArgument(
                f"output format '{output}' is not allowed; use one of "
                f"{', '.join(sorted(GET_OUTPUT_FORMATS))}"
            )
        kinds = {
            part.split("/", 1)[0].split(".", 1)[0].strip().lower()
            for part in resource.split(",")
        }
        if kinds & SECRET_KINDS and output in ("yaml", "json"):
            raise _InvalidArgument("secret contents may not be read; list or describe instead")
        return ["get", resource, *ns, *args]

    if operation == "describe":
        return ["describe", resource, *ns, *args]

    if operation == "logs":
        argv = ["logs", resource, *ns, *args]
        if not _has_flag(args, "--tail"):
            argv.append(f"--tail={settings.default_log_tail}")
        return argv

    if operation == "events":
        argv = ["get", "events", *ns]
        if not namespace and not _has_flag(args, "-A", "--all-namespaces"):
            argv.append("--all-namespaces")
        if resource and not _has_flag(args, "--field-selector"):
            name = resource.split("/")[-1]
            argv.append(f"--field-selector=involvedObject.name={name}")
        if not _has_flag(args, "--sort-by"):
            argv.append("--sort-by=.lastTimestamp")
        return argv + args

    if operation == "top":
        kind, _, name = resource.partition("/")
        if kind.lower() not in TOP_KINDS:
            raise _InvalidArgument("resource usage is only available for pods and nodes")
        return ["top", kind, *([name] if name else []), *ns, *args]

    # explain
    return ["explain", resource, *args]


def validate_request(request: DataRequest) -> Union[SafeInvocation, Rejection]:
    """Validate a model-proposed read request and bind its arguments."""
    command = describe_request(request)
    operation = normalise_operation(request.operation_type)

    if operation not in SAFE_OPERATIONS:
        return Rejection(
            RejectionReason.UNSUPPORTED_OPERATION,
            f"Operation '{request.operation_type}' is not permitted during "
            f"investigation. Allowed: {', '.join(sorted(SAFE_OPERATIONS))}.",
            command,
        )

    resource = (request.resource or "").strip()
    if not resource and operation != "events":
        return Rejection(
            RejectionReason.INVALID_ARGUMENT,
            f"Operation '{operation}' requires a resource",
            command,
        )
    if resource and not _RESOURCE_RE.match(resource):
        return Rejection(
            RejectionReason.INVALID_ARGUMENT, f"Invalid resource '{resource}'", command
        )

    namespace = (request.namespace or "").strip() or None
    if namespace and not _NAMESPACE_RE.match(namespace):
        return Rejection(
            RejectionReason.INVALID_ARGUMENT, f"Invalid namespace '{namespace}'", command
        )
    if namespace and operation == "explain":
        namespace = None

    try:
        args = _normalise_args(operation, list(request.args))
        argv = _build_argv(operation, resource, namespace, args)
    except _InvalidArgument as exc:
        return Rejection(RejectionReason.INVALID_ARGUMENT, str(exc), command)

    return SafeInvocation(argv=tuple(argv))


def normalise_command(command: str) -> str:
    """Canonical form used for approval matching.

    Models sometimes escape quotes inside JSON patches; unescape them the same
    way on both sides so the comparison stays exact.
    """
    return command.strip().replace('\\"', '"')


def validate_command(
    command: str, approved: Collection[str], stdin: Optional[str] = None
) -> Union[SafeInvocation, Rejection]:
    """Validate a remediation command against the reviewed plan."""
    normalised = normalise_command(command)
    approved_set = {normalise_command(c) for c in approved}

    if normalised not in approved_set:
        return Rejection(
            RejectionReason.UNAPPROVED_COMMAND,
            "Command was not part of the reviewed remediation plan",
            command,
        )

    try:
        tokens = shlex.split(normalised)
    except ValueError as exc:
        return Rejection(
            RejectionReason.MALFORMED_COMMAND, f"Cannot tokenize command: {exc}", command
        )

    if len(tokens) < 2 or tokens[0] != "kubectl":
        return Rejection(
            RejectionReason.MALFORMED_COMMAND, "Only kubectl commands can be executed", command
        )

    for token in tokens[1:]:
        if token in SHELL_OPERATORS or token[:1] in ("|", ">", "<"):
            return Rejection(
                RejectionReason.MALFORMED_COMMAND,
                f"Shell operator '{token}' is not supported; commands run without a shell",
                command,
            )
        if token.partition("=")[0] in IDENTITY_FLAGS:
            return Rejection(
                RejectionReason.INVALID_ARGUMENT,
                f"Flag '{token.partition('=')[0]}' may not override the target cluster",
                command,
            )

    argv = tuple(tokens[1:])
    return SafeInvocation(argv=argv, mutating=argv[0] not in READ_VERBS, stdin=stdin)


def prepare_dry_run(invocation: SafeInvocation) -> Optional[SafeInvocation]:
    """Derive a server-side dry-run of a mutating invocation.

    Returns None for verbs kubectl cannot dry-run.
    """
    if not invocation.argv or invocation.argv[0] not in DRY_RUN_VERBS:
        return None
    argv = [a for a in invocation.argv if a.partition("=")[0] != "--dry-run"]
    argv.append("--dry-run=server")
    return SafeInvocation(argv=tuple(argv), mutating=False, stdin=invocation.stdin)
