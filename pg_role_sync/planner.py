"""
Reconciliation planner.

Builds the ordered list of statements that brings the role catalog in line
with the directory: drops of previously managed roles first (when requested),
then a create/comment/grant triplet for every member of every sync-source
group, in discovery and directory order.
"""

import logging

from pg_role_sync.catalog import CatalogError, DEFAULT_MANAGED_COMMENT, DEFAULT_SYNC_GROUP_COMMENT
from pg_role_sync.names import ReservedIdentityFilter, normalize_identity
from pg_role_sync.statements import Plan, Outcome, DropRole, CreateRole, CommentOnRole, GrantRole

logger = logging.getLogger(__name__)


class PlannerState:
    IDLE = 'idle'
    DROPPING = 'dropping'
    DISCOVERING = 'discovering'
    RESOLVING = 'resolving'
    DONE = 'done'
    FAILED = 'failed'


class ReconciliationPlanner:
    """
    Orchestrates discovery, membership resolution and normalization into a Plan.

    The planner never changes the catalog; it only reads from it and from the
    directory. A discovery failure propagates and leaves the planner in the
    failed state.
    """

    def __init__(self, catalog, directory, reserved_filter=None,
                 managed_comment=DEFAULT_MANAGED_COMMENT,
                 sync_group_comment=DEFAULT_SYNC_GROUP_COMMENT):
        """
        Args:
            catalog: RoleCatalog (or anything with find_managed_roles/find_sync_group_roles)
            directory: LDAPClient (or anything with resolve_members)
            reserved_filter: ReservedIdentityFilter, defaults to the postgres/template rules
            managed_comment: Provenance comment written on and used to find managed roles
            sync_group_comment: Comment identifying sync-source group roles
        """
        self.catalog = catalog
        self.directory = directory
        self.reserved_filter = reserved_filter or ReservedIdentityFilter()
        self.managed_comment = managed_comment
        self.sync_group_comment = sync_group_comment
        self.state = PlannerState.IDLE
        self.failure = None

    def build_plan(self, drop_managed: bool = False, case_insensitive: bool = False) -> Plan:
        """
        Build the reconciliation plan.

        Args:
            drop_managed: Drop every role carrying the provenance comment first
            case_insensitive: Create unquoted lower-case roles where possible

        Returns:
            Plan with ordered statements and skip/failure outcomes

        Raises:
            DiscoveryQueryError: If either discovery query fails
        """
        plan = Plan()
        try:
            if drop_managed:
                self.state = PlannerState.DROPPING
                for role in self.catalog.find_managed_roles(self.managed_comment):
                    plan.statements.append(DropRole(role))

            self.state = PlannerState.DISCOVERING
            groups = self.catalog.find_sync_group_roles(self.sync_group_comment)
        except CatalogError as e:
            self.state = PlannerState.FAILED
            self.failure = str(e)
            logger.error(f"Role discovery failed: {e}")
            raise

        self.state = PlannerState.RESOLVING
        for group in groups:
            self._plan_group(plan, group, case_insensitive)

        self.state = PlannerState.DONE
        logger.info(f"Plan built: {len(plan.drops())} drops, {len(plan.statements)} statements, "
                    f"{len(plan.skipped())} skipped, {len(plan.failed())} lookup failures")
        return plan

    def _plan_group(self, plan: Plan, group: str, case_insensitive: bool):
        resolution = self.directory.resolve_members(group)
        plan.outcomes.extend(resolution.outcomes)

        for identity in resolution.members:
            reason = self.reserved_filter.reason(identity)
            if reason:
                logger.info(f"Skipping {identity} in group {group}: {reason}")
                plan.outcomes.append(Outcome(identity, Outcome.SKIPPED, reason))
                continue

            role = normalize_identity(identity, case_insensitive)
            plan.statements.extend([
                CreateRole(role.name, quoted=role.quoted),
                CommentOnRole(role.name, self.managed_comment, quoted=role.quoted),
                GrantRole(group, role.name, quoted=role.quoted),
            ])
