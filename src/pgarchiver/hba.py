"""Rendering and merging of pg_hba.conf rules."""

import contextlib
import ipaddress
import os
import re
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from pgarchiver.exceptions import RuleFileReadError, RuleFileWriteError

logger = structlog.get_logger(__name__)

HBA_LINE_COMMENT = " # Auto-generated by pg_auto_failover"

# Authentication methods meaning "the operator manages pg_hba.conf"
SKIP_AUTH_METHODS = frozenset({"skip"})


def is_skip_auth(auth_method: str) -> bool:
    """Check whether an authentication method disables HBA edits."""
    return auth_method in SKIP_AUTH_METHODS


class HBADatabaseType(Enum):
    """Kind of database field in an HBA rule."""

    ALL = "all"
    REPLICATION = "replication"
    DBNAME = "dbname"


@dataclass(frozen=True)
class HBARule:
    """A single client authentication rule."""

    ssl: bool
    database_type: HBADatabaseType
    host: str
    auth_method: str
    database: str | None = None
    username: str | None = None

    def render(self) -> str:
        """Render the rule as a pg_hba.conf line, without trailing comment."""
        return render_rule(self)


def escape_hba_string(value: str) -> str:
    """Quote a value for pg_hba.conf.

    PostgreSQL's HBA tokenizer reads two double quotes inside a quoted
    token as one literal double quote.
    """
    return '"' + value.replace('"', '""') + '"'


def _database_field(database_type: HBADatabaseType, database: str | None) -> str:
    if database_type is HBADatabaseType.ALL:
        return "all"
    if database_type is HBADatabaseType.REPLICATION:
        return "replication"
    if database is None:
        raise ValueError("database name is required for a DBNAME rule")
    return escape_hba_string(database)


def _host_field(host: str) -> str:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        # hostname, or an address already in CIDR notation
        return host

    if isinstance(address, ipaddress.IPv4Address):
        return f"{host}/32"
    return f"{host}/128"


def render_rule(rule: HBARule) -> str:
    """Build the pg_hba.conf line for a rule.

    Args:
        rule: Rule to render

    Returns:
        The line, e.g. ``host "app" all 10.0.0.0/24 md5``
    """
    connection_type = "hostssl" if rule.ssl else "host"
    database = _database_field(rule.database_type, rule.database)
    username = escape_hba_string(rule.username) if rule.username is not None else "all"
    host = _host_field(rule.host)
    return f"{connection_type} {database} {username} {host} {rule.auth_method}"


def _contains_line(contents: str, line: str) -> bool:
    """Check for line as a whole rule, optionally followed by a comment."""
    pattern = rf"^{re.escape(line)}[ \t]*(?:#[^\n]*)?\r?$"
    return re.search(pattern, contents, re.MULTILINE) is not None


def _write_file(path: Path, contents: str) -> None:
    """Replace the file contents in one step."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp:
            tmp.write(contents)
            tmp.flush()
            os.fsync(tmp.fileno())
        shutil.copymode(path, tmp_name)
        os.replace(tmp_name, path)
    except BaseException:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(tmp_name)
        raise


def ensure_line(
    path: Path | str,
    line: str,
    trailing_comment: str = HBA_LINE_COMMENT,
) -> bool:
    """Make sure a line exists in a file, appending it when missing.

    The whole file is read, the line is appended in memory, and the new
    contents replace the file atomically. Another process editing the same
    file concurrently may lose this append; running again restores it.

    Args:
        path: File to edit
        line: Line to look for, without trailing comment or newline
        trailing_comment: Text appended after the line when it is added

    Returns:
        True once the line is present

    Raises:
        RuleFileReadError: The file could not be read
        RuleFileWriteError: The new contents could not be written
    """
    path = Path(path)

    try:
        contents = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        logger.error("Failed to read HBA file", path=str(path), error=str(e))
        raise RuleFileReadError(path, f"Failed to read file: {e}") from e

    if _contains_line(contents, line):
        logger.debug("Line already exists, skipping", path=str(path), line=line)
        return True

    if contents and not contents.endswith("\n"):
        contents += "\n"
    new_contents = contents + line + trailing_comment + "\n"

    try:
        _write_file(path, new_contents)
    except OSError as e:
        logger.error("Failed to write HBA file", path=str(path), error=str(e))
        raise RuleFileWriteError(path, f"Failed to write file: {e}") from e

    logger.debug("Wrote new HBA file", path=str(path), line=line)
    return True


def ensure_host_rule_exists(path: Path | str, rule: HBARule) -> bool:
    """Make sure a host rule exists in the HBA file.

    When the rule's authentication method is a skip method, the file is left
    untouched and the rule is logged so that operators can apply it.
    """
    line = rule.render()

    if is_skip_auth(rule.auth_method):
        logger.warning("Skipping HBA edits (per --skip-pg-hba) for rule", rule=line)
        return True

    logger.debug("Ensuring the HBA file contains the line", path=str(path), line=line)
    return ensure_line(path, line)
