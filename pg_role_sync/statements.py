"""
Statement model for role catalog changes.

Each statement is an immutable value that renders itself to a single line of
SQL. Roles read back from the catalog (drops, grant targets) carry their exact
stored name and are always quoted; roles created from the directory follow the
quoting decision made during normalization.
"""

from dataclasses import dataclass, field
from typing import List

from pg_role_sync.names import RoleName, quote_identifier


def quote_literal(text: str) -> str:
    """Render a string as a SQL literal."""
    return "'" + text.replace("'", "''") + "'"


@dataclass(frozen=True)
class DropRole:
    role: str

    def to_sql(self) -> str:
        return f"DROP ROLE {quote_identifier(self.role)};"


@dataclass(frozen=True)
class CreateRole:
    role: str
    quoted: bool = True
    login: bool = True

    def to_sql(self) -> str:
        option = 'LOGIN' if self.login else 'NOLOGIN'
        return f"CREATE ROLE {RoleName(self.role, self.quoted).to_sql()} {option};"


@dataclass(frozen=True)
class CommentOnRole:
    role: str
    text: str
    quoted: bool = True

    def to_sql(self) -> str:
        return f"COMMENT ON ROLE {RoleName(self.role, self.quoted).to_sql()} IS {quote_literal(self.text)};"


@dataclass(frozen=True)
class GrantRole:
    group: str
    role: str
    quoted: bool = True

    def to_sql(self) -> str:
        return f"GRANT {quote_identifier(self.group)} TO {RoleName(self.role, self.quoted).to_sql()};"


@dataclass(frozen=True)
class Outcome:
    """A per-entity note recorded while planning or executing (skipped or failed)."""
    subject: str
    status: str
    reason: str

    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass
class Plan:
    """Ordered statements plus the outcomes recorded while building them."""
    statements: List[object] = field(default_factory=list)
    outcomes: List[Outcome] = field(default_factory=list)

    def drops(self) -> List[DropRole]:
        return [s for s in self.statements if isinstance(s, DropRole)]

    def skipped(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.status == Outcome.SKIPPED]

    def failed(self) -> List[Outcome]:
        return [o for o in self.outcomes if o.status == Outcome.FAILED]

    def __len__(self):
        return len(self.statements)
