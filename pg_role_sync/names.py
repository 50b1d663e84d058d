"""
Role name normalization and reserved identity filtering.

Directory account names are turned into PostgreSQL role names here. The
quoting decision made by normalize_identity fixes the case sensitivity of the
role for its whole lifetime, so it must stay stable between releases.
"""

import re
import logging
from typing import NamedTuple, Optional

logger = logging.getLogger(__name__)

DEFAULT_ADMIN_USER = 'postgres'
DEFAULT_RESERVED_PREFIX = 'template'


class RoleName(NamedTuple):
    """A normalized role name and whether it must be rendered as a quoted identifier."""
    name: str
    quoted: bool

    def to_sql(self) -> str:
        if self.quoted:
            return quote_identifier(self.name)
        return self.name


def quote_identifier(name: str) -> str:
    """Wrap a name in double quotes, doubling any embedded double quote."""
    return '"' + name.replace('"', '""') + '"'


def normalize_identity(identity: str, case_insensitive: bool) -> RoleName:
    """
    Normalize a directory account name into a role name.

    Identities containing a hyphen are always kept verbatim and quoted, since an
    unquoted hyphen is not a valid identifier character. Otherwise the name is
    lower-cased and left unquoted only when case-insensitive mode is on.

    Args:
        identity: Raw account name from the directory
        case_insensitive: Whether roles should be created case-insensitively

    Returns:
        RoleName with the final name and quoting decision
    """
    if not case_insensitive or '-' in identity:
        return RoleName(identity, True)
    return RoleName(identity.lower(), False)


class ReservedIdentityFilter:
    """
    Predicate excluding administrative and template accounts from role creation.

    An identity is reserved when it equals one of the administrator names or
    starts with the reserved prefix pattern, both compared case-insensitively.
    """

    def __init__(self, admin_user: str = DEFAULT_ADMIN_USER,
                 reserved_prefix: Optional[str] = DEFAULT_RESERVED_PREFIX,
                 extra_admins: Optional[list] = None):
        self.admin_names = {admin_user.lower()}
        for name in extra_admins or []:
            if name:
                self.admin_names.add(name.lower())
        self.reserved_prefix = reserved_prefix
        self._prefix_re = re.compile(reserved_prefix, re.IGNORECASE) if reserved_prefix else None

    def is_reserved(self, identity: str) -> bool:
        if identity.lower() in self.admin_names:
            return True
        if self._prefix_re and self._prefix_re.match(identity):
            return True
        return False

    def reason(self, identity: str) -> Optional[str]:
        """Describe why an identity is reserved, or None if it is not."""
        if identity.lower() in self.admin_names:
            return f"identity '{identity}' is a database administrator account"
        if self._prefix_re and self._prefix_re.match(identity):
            return f"identity '{identity}' matches reserved prefix '{self.reserved_prefix}'"
        return None
