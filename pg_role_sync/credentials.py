"""
Credential discovery for the PostgreSQL administrative connection.

Resolution order is an explicit password, then the PGPASSWORD environment
variable, then the user's password file (PGPASSFILE or ~/.pgpass).
"""

import os
import logging
from typing import Dict, List, Mapping, Optional, Any

logger = logging.getLogger(__name__)


class CredentialMissingError(Exception):
    """Raised when no password could be found for the catalog connection."""
    pass


def default_pgpass_path(environ: Mapping[str, str] = None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get('PGPASSFILE') or os.path.join(os.path.expanduser('~'), '.pgpass')


def _split_pgpass_line(line: str) -> List[str]:
    """Split a password file line on unescaped colons, handling \\: and \\\\ escapes."""
    fields = []
    current = []
    escaped = False
    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == '\\':
            escaped = True
        elif char == ':':
            fields.append(''.join(current))
            current = []
        else:
            current.append(char)
    fields.append(''.join(current))
    return fields


def read_pgpass(path: str) -> List[List[str]]:
    """
    Parse a password file into its entries.

    Args:
        path: Path to the password file

    Returns:
        List of [host, port, database, username, password] entries, in file order.
        A missing file yields an empty list.
    """
    if not os.path.exists(path):
        logger.debug(f"Password file not found: {path}")
        return []

    entries = []
    with open(path, 'r', encoding='utf-8') as f:
        for line_number, raw_line in enumerate(f, start=1):
            line = raw_line.rstrip('\r\n')
            if not line.strip() or line.lstrip().startswith('#'):
                continue
            fields = _split_pgpass_line(line)
            if len(fields) != 5:
                logger.warning(f"Ignoring malformed entry on line {line_number} of {path}")
                continue
            entries.append(fields)
    return entries


def _field_matches(pattern: str, value: str) -> bool:
    return pattern == '*' or pattern == value


def lookup_pgpass(path: str, host: str, port: Any, database: str, user: str) -> Optional[str]:
    """Return the password of the first matching password file entry, or None."""
    wanted = [host, str(port), database, user]
    for entry in read_pgpass(path):
        if all(_field_matches(pattern, value) for pattern, value in zip(entry[:4], wanted)):
            return entry[4]
    return None


def resolve_password(connection: Dict[str, Any], explicit: Optional[str] = None,
                     environ: Mapping[str, str] = None,
                     pgpass_path: Optional[str] = None) -> str:
    """
    Resolve the password for a catalog connection.

    Args:
        connection: Connection parameters with host, port, database and user
        explicit: Password given on the command line or in the configuration
        environ: Environment to consult (defaults to os.environ)
        pgpass_path: Password file path (defaults to PGPASSFILE or ~/.pgpass)

    Returns:
        The resolved password

    Raises:
        CredentialMissingError: If no source provides a password
    """
    environ = os.environ if environ is None else environ

    if explicit:
        logger.debug("Using explicitly supplied password")
        return explicit

    env_password = environ.get('PGPASSWORD')
    if env_password:
        logger.debug("Using password from PGPASSWORD")
        return env_password

    path = pgpass_path or default_pgpass_path(environ)
    password = lookup_pgpass(path, connection['host'], connection['port'],
                             connection['database'], connection['user'])
    if password:
        logger.debug(f"Using password from {path}")
        return password

    raise CredentialMissingError(
        f"No password found for {connection['user']}@{connection['host']}:"
        f"{connection['port']}/{connection['database']} "
        f"(checked explicit value, PGPASSWORD and {path})"
    )
