"""
Reconciliation engine for Identity Sync.

Drives every roster person through the downstream systems in a fixed order:
identity provider, then each business app the person is tagged for, then
(after a single global profile sync) the content-share folder grant. A failed
step only affects the person it belongs to; completed steps are never rolled
back.
"""

import logging
from typing import Dict, Any, List, Optional, NamedTuple, Callable, Tuple

from identity_sync.context import RunContext
from identity_sync.errors import FatalRunError, EntityStepError
from identity_sync.roster import Person

logger = logging.getLogger(__name__)


class StepFailure(NamedTuple):
    person_id: str
    system: str
    step: str
    message: str


class PhaseResult(NamedTuple):
    """Tally of one pass over the roster."""

    name: str
    succeeded: int
    total: int
    failures: Tuple[StepFailure, ...] = ()
    aborted: Optional[str] = None

    @property
    def failed(self) -> int:
        return self.total - self.succeeded


class ReconciliationEngine:
    """
    Add/delete pipeline over the roster.

    Each mode is two phases: a directory phase (identity provider and business
    apps, person by person) followed by a content-share phase that only runs
    once the content-share system has pulled fresh profiles from the identity
    provider.
    """

    def __init__(self, config: Dict[str, Any], identity_provider, business_apps: List[Any],
                 content_share=None, output: Callable[[str], None] = print):
        """
        Initialize engine.

        Args:
            config: Loaded configuration
            identity_provider: IdentityProviderAdapter
            business_apps: BusinessAppAdapter instances, in configuration order
            content_share: ContentShareAdapter, or None when not configured
            output: Sink for the per-person progress and tally lines
        """
        self.config = config
        self.identity_provider = identity_provider
        self.business_apps = list(business_apps)
        self.content_share = content_share
        self.output = output

        self.email_domain = (config.get('organization') or {}).get('email_domain')
        self.token_refresh_interval = config['identity_provider'].get('token_refresh_interval', 100)

    @property
    def directory_phase_name(self) -> str:
        return '/'.join([self.identity_provider.name] + [app.name for app in self.business_apps])

    def refresh_token(self, ctx: RunContext) -> RunContext:
        """Acquire a new identity-provider token. Raises FatalRunError on failure."""
        return ctx.with_token(self.identity_provider.acquire_token())

    def run_add(self, ctx: RunContext, persons: List[Person]) -> List[PhaseResult]:
        """Synchronize every roster person into the downstream systems."""
        logger.info(f"Starting user addition flow for {len(persons)} persons")
        directory_result, ctx = self._run_phase(ctx, self.directory_phase_name, persons,
                                                self.add_person, rotate_token=True)
        results = [directory_result]
        if self.content_share:
            results.append(self._run_content_share_phase(ctx, persons, self.grant_content_share))
        return results

    def run_delete(self, ctx: RunContext, persons: List[Person]) -> List[PhaseResult]:
        """Remove every roster person from the downstream systems."""
        logger.info(f"Starting user deletion flow for {len(persons)} persons")
        directory_result, ctx = self._run_phase(ctx, self.directory_phase_name, persons,
                                                self.delete_person, rotate_token=True)
        results = [directory_result]
        if self.content_share:
            results.append(self._run_content_share_phase(ctx, persons, self.revoke_content_share))
        return results

    def apps_for(self, person: Person) -> List[Any]:
        return [app for app in self.business_apps if app.name in person.application_memberships]

    def add_person(self, ctx: RunContext, person: Person):
        """Identity provider record and groups, then every tagged business app."""
        person = person.with_manager_email(self.email_domain)
        idp = self.identity_provider

        handle = self._step(person, idp.name, 'lookup', idp.find_by_key, ctx, person.id)
        if handle is None:
            handle = self._step(person, idp.name, 'create', idp.create, ctx, person)
            if handle.created:
                self._step(person, idp.name, 'group assignment', idp.assign_role_groups, ctx, handle, person)
            else:
                logger.info(f"{person.id} already present in {idp.name}; keeping existing groups")

        for app in self.apps_for(person):
            app_handle = self._step(person, app.name, 'lookup', app.find_by_key, ctx, person.id)
            if app_handle is None:
                self._step(person, app.name, 'create', app.create, ctx, person)
            else:
                self._step(person, app.name, 'update', app.update, ctx, app_handle, person)

    def delete_person(self, ctx: RunContext, person: Person, apps: Optional[List[Any]] = None):
        """
        Remove the person from the identity provider and business apps.

        Args:
            ctx: Run context
            person: Person to remove
            apps: Business apps to remove from; defaults to the person's tagged apps
        """
        idp = self.identity_provider
        handle = self._step(person, idp.name, 'lookup', idp.find_by_key, ctx, person.id)
        if handle is None:
            logger.info(f"{person.id} not found in {idp.name}; nothing to delete")
        else:
            self._step(person, idp.name, 'delete', idp.delete, ctx, handle)

        for app in (self.apps_for(person) if apps is None else apps):
            app_handle = self._step(person, app.name, 'lookup', app.find_by_key, ctx, person.id)
            if app_handle is None:
                logger.info(f"{person.id} not found in {app.name}; nothing to delete")
                continue
            self._step(person, app.name, 'delete', app.delete, ctx, app_handle)

    def grant_content_share(self, ctx: RunContext, person: Person):
        share = self.content_share
        handle = self._step(person, share.name, 'lookup', share.find_by_key, ctx, person.id)
        if handle is None:
            raise EntityStepError(person.id, share.name, 'lookup',
                                  f"user not found; {share.name} not synced with this user")
        self._step(person, share.name, 'grant', share.grant, ctx, handle)

    def revoke_content_share(self, ctx: RunContext, person: Person):
        share = self.content_share
        handle = self._step(person, share.name, 'lookup', share.find_by_key, ctx, person.id)
        if handle is None:
            logger.info(f"{person.id} not found in {share.name}; nothing to revoke")
            return
        self._step(person, share.name, 'revoke', share.delete, ctx, handle)

    def sync_content_share(self, ctx: RunContext) -> Optional[str]:
        """
        Run the one-time content-share profile sync.

        Returns:
            None on success, otherwise the failure message
        """
        self.output(f"*** Synchronizing {self.identity_provider.name} to {self.content_share.name}")
        try:
            self.content_share.sync_profiles(ctx)
        except FatalRunError as e:
            logger.error(f"{e}; skipping every {self.content_share.name} step")
            return str(e)
        return None

    def _step(self, person: Person, system: str, step: str, func: Callable, *args):
        try:
            return func(*args)
        except FatalRunError:
            raise
        except Exception as e:
            raise EntityStepError(person.id, system, step, e) from e

    def _run_content_share_phase(self, ctx: RunContext, persons: List[Person],
                                 process: Callable) -> PhaseResult:
        share_name = self.content_share.name
        tagged = [person for person in persons if share_name in person.application_memberships]
        if not tagged:
            logger.info(f"No persons tagged for {share_name}")
            return self.report(PhaseResult(share_name, 0, 0))

        if ctx.deadline_passed():
            logger.warning(f"Run deadline reached; skipping {share_name} profile sync "
                           f"and {len(tagged)} persons")
            return self.report(PhaseResult(share_name, 0, len(tagged)))

        sync_error = self.sync_content_share(ctx)
        if sync_error:
            return self.report(PhaseResult(share_name, 0, len(tagged), aborted=sync_error))

        result, _ = self._run_phase(ctx, share_name, tagged, process)
        return result

    def _run_phase(self, ctx: RunContext, phase_name: str, persons: List[Person],
                   process: Callable, rotate_token: bool = False) -> Tuple[PhaseResult, RunContext]:
        """
        Run process over every person, isolating per-person failures.

        Returns:
            Tuple of (PhaseResult, context holding the latest token)

        Raises:
            FatalRunError: If a token refresh fails
        """
        self.output(f"*** Synchronize with {phase_name}")
        total = len(persons)
        succeeded = 0
        failures = []

        for index, person in enumerate(persons):
            if ctx.deadline_passed():
                logger.warning(f"Run deadline reached; {total - index} persons left unprocessed "
                               f"for {phase_name}")
                break

            if rotate_token and index and index % self.token_refresh_interval == 0:
                logger.info(f"Refreshing {self.identity_provider.name} token after {index} persons")
                ctx = self.refresh_token(ctx)

            self.output(f"* Processing user [{index + 1}/{total}] -> {person.display_name}")
            try:
                process(ctx, person)
            except EntityStepError as e:
                failures.append(StepFailure(e.person_id, e.system, e.step, str(e.cause)))
                logger.error(f"ERROR: {e}")
                continue

            succeeded += 1

        return self.report(PhaseResult(phase_name, succeeded, total, tuple(failures))), ctx

    def report(self, result: PhaseResult) -> PhaseResult:
        self.output(f"*** Successfully processed [{result.succeeded}/{result.total}] users for {result.name}")
        logger.info(f"Phase {result.name}: {result.succeeded}/{result.total} succeeded, "
                    f"{len(result.failures)} failures")
        if result.aborted:
            logger.error(f"Phase {result.name} aborted: {result.aborted}")
        return result
