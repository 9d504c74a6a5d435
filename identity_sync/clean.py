"""
Clean mode: interactive removal of downstream accounts that are no longer on
the roster.

The reference listing comes from one business app. Every listed email that is
neither on the roster nor matched by an exclusion pattern is offered for
removal; confirmed emails go through the same delete path as --delete.
"""

import fnmatch
import logging
from typing import Dict, Any, List, Callable

from identity_sync.context import RunContext
from identity_sync.engine import ReconciliationEngine, PhaseResult, StepFailure
from identity_sync.errors import EntityStepError, FatalRunError
from identity_sync.roster import Person

logger = logging.getLogger(__name__)

CONFIRM_ANSWERS = ('y', 'yes')


class DiffReconciler:
    """Diffs one business app's users against the roster and removes confirmed strays."""

    def __init__(self, engine: ReconciliationEngine, clean_config: Dict[str, Any],
                 prompt: Callable[[str], str] = input):
        """
        Args:
            engine: Engine whose delete path is reused for removals
            clean_config: clean configuration block (source_app, excluded_patterns)
            prompt: Reads one answer from the operator
        """
        self.engine = engine
        self.prompt = prompt
        self.excluded_patterns = [pattern.lower() for pattern in clean_config.get('excluded_patterns') or []]

        source_name = clean_config.get('source_app')
        apps = {app.name: app for app in engine.business_apps}
        if not apps:
            raise FatalRunError("Clean mode needs at least one business app to list users from")
        self.source_app = apps.get(source_name) or engine.business_apps[0]

    def is_excluded(self, email: str) -> bool:
        return any(fnmatch.fnmatchcase(email.lower(), pattern) for pattern in self.excluded_patterns)

    def find_strays(self, ctx: RunContext, persons: List[Person]) -> List[str]:
        """
        Emails present in the source app but absent from the roster.

        Raises:
            FatalRunError: If the source app listing fails
        """
        roster = {person.id.lower(): person for person in persons}
        try:
            listed = self.source_app.list_keys(ctx)
        except Exception as e:
            raise FatalRunError(f"Listing users from {self.source_app.name} failed: {e}")

        strays = []
        seen = set()
        for email in listed:
            normalized = email.strip().lower()
            if normalized in roster or normalized in seen:
                continue
            seen.add(normalized)
            if self.is_excluded(email):
                logger.info(f"Skipping excluded account {email}")
                continue
            strays.append(email.strip())

        logger.info(f"Found {len(strays)} accounts in {self.source_app.name} not on the roster")
        return strays

    def confirm(self, email: str) -> bool:
        answer = self.prompt(f"Remove {email}? [y/N] ")
        return (answer or '').strip().lower() in CONFIRM_ANSWERS

    def run(self, ctx: RunContext, persons: List[Person]) -> PhaseResult:
        """
        Prompt for every stray, remove the confirmed ones and tally the result.

        Declined emails are skipped and not counted. A confirmed email counts
        as succeeded only when every removal step succeeded.
        """
        strays = self.find_strays(ctx, persons)
        if not strays:
            return self.engine.report(PhaseResult('clean', 0, 0))

        confirmed = []
        failures = {}
        skipped = 0
        for email in strays:
            if not self.confirm(email):
                skipped += 1
                continue

            if ctx.deadline_passed():
                logger.warning(f"Run deadline reached; not removing {email}")
                failures[email] = StepFailure(email, 'clean', 'deadline', 'run deadline reached')
                confirmed.append(email)
                continue

            person = Person.minimal(email)
            confirmed.append(email)
            try:
                self.engine.delete_person(ctx, person, apps=self.engine.business_apps)
            except EntityStepError as e:
                failures[email] = StepFailure(e.person_id, e.system, e.step, str(e.cause))
                logger.error(f"ERROR: {e}")

        if confirmed and self.engine.content_share:
            self._revoke_shares(ctx, confirmed, failures)

        succeeded = len([email for email in confirmed if email not in failures])
        logger.info(f"Clean mode: {len(confirmed)} confirmed, {skipped} declined")
        return self.engine.report(PhaseResult('clean', succeeded, len(confirmed), tuple(failures.values())))

    def _revoke_shares(self, ctx: RunContext, emails: List[str], failures: Dict[str, StepFailure]):
        share_name = self.engine.content_share.name
        pending = [email for email in emails if email not in failures]
        if not pending:
            return

        if ctx.deadline_passed():
            logger.warning(f"Run deadline reached; skipping {share_name} profile sync "
                           f"and {len(pending)} revocations")
            for email in pending:
                failures[email] = StepFailure(email, share_name, 'deadline', 'run deadline reached')
            return

        sync_error = self.engine.sync_content_share(ctx)

        for email in pending:
            if sync_error:
                failures[email] = StepFailure(email, share_name, 'profile sync', sync_error)
                continue
            try:
                self.engine.revoke_content_share(ctx, Person.minimal(email))
            except EntityStepError as e:
                failures[email] = StepFailure(e.person_id, e.system, e.step, str(e.cause))
                logger.error(f"ERROR: {e}")
