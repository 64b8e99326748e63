"""
Job variable references in step commands.

Commands reference job variables as $NAME or ${NAME}. The runner never
rewrites command text: variables are exported into the child's
environment and the shell expands them. What the runner does is check
up front that every referenced name can be supplied, so a job with a
missing variable fails setup before any process is spawned.

Not every "$NAME" in a command is a reference to something the runner
must supply. Text inside single quotes is never expanded, and names the
command binds itself (NAME=value, for NAME in ..., read NAME) are shell
variables local to that command.
"""

import os
import re
from collections.abc import Mapping

from ci_common.models import Job

_NAME = r"[A-Za-z_][A-Za-z0-9_]*"

# $NAME or ${NAME}, not escaped with a backslash
VARIABLE_PATTERN = re.compile(
    rf"(?<!\\)\$(?:\{{(?P<braced>{_NAME})\}}|(?P<bare>{_NAME}))"
)

# NAME=value or NAME+=value at the start of a simple command or after
# "export", "local", "readonly" etc.
ASSIGNMENT_PATTERN = re.compile(rf"(?:^|(?<=[\s;&|(`]))(?P<name>{_NAME})\+?=")

# for NAME in ... / select NAME in ...
LOOP_PATTERN = re.compile(rf"\b(?:for|select)\s+(?P<name>{_NAME})\b")

# read [-options] NAME [NAME ...]
READ_PATTERN = re.compile(rf"\bread(?:\s+-\w+)*(?P<names>(?:\s+{_NAME})+)")


def _strip_single_quoted(command: str) -> str:
    """Remove single-quoted text, which the shell never expands."""
    kept: list[str] = []
    in_single = in_double = escaped = False
    for char in command:
        if in_single:
            if char == "'":
                in_single = False
            continue
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == '"':
            in_double = not in_double
        elif char == "'" and not in_double:
            in_single = True
            continue
        kept.append(char)
    return "".join(kept)


def bound_variables(command: str) -> set[str]:
    """
    List the shell variables a command assigns itself.

    Args:
        command: Command string from a job script

    Returns:
        Names assigned, looped over or read by the command
    """
    text = _strip_single_quoted(command)
    names = {m.group("name") for m in ASSIGNMENT_PATTERN.finditer(text)}
    names.update(m.group("name") for m in LOOP_PATTERN.finditer(text))
    for match in READ_PATTERN.finditer(text):
        names.update(match.group("names").split())
    return names


def referenced_variables(command: str) -> list[str]:
    """
    List the variable names a command expects from its environment.

    Single-quoted text and names bound by the command itself are skipped.

    Args:
        command: Command string from a job script

    Returns:
        Names in order of first appearance, without duplicates
    """
    bound = bound_variables(command)
    names: list[str] = []
    for match in VARIABLE_PATTERN.finditer(_strip_single_quoted(command)):
        name = match.group("braced") or match.group("bare")
        if name not in names and name not in bound:
            names.append(name)
    return names


def missing_variables(
    job: Job, environment: Mapping[str, str] | None = None
) -> list[str]:
    """
    List variables referenced anywhere in the job's script but not defined.

    Args:
        job: Job to check
        environment: Inherited environment the commands will also see;
                     names defined there are not missing

    Returns:
        Missing names in order of first appearance in the script
    """
    environment = environment or {}
    missing: list[str] = []
    for command in job.script:
        for name in referenced_variables(command):
            if job.variable(name) is None and name not in environment and name not in missing:
                missing.append(name)
    return missing


def build_environment(job: Job, inherit: bool = True) -> dict[str, str]:
    """
    Build the environment for a job's child processes.

    Args:
        job: Job whose variables are exported
        inherit: Start from the runner's own environment (PATH etc.)

    Returns:
        Environment mapping; job variables override inherited values
    """
    env = dict(os.environ) if inherit else {}
    env.update(job.variables)
    return env
