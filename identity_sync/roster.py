"""
Roster records and the identity-feed client.

The roster is the authoritative list of people, fetched fresh on every run
from the corporate identity feed. Nothing here is persisted between runs.
"""

import logging
from typing import Dict, Any, List, Optional, NamedTuple, FrozenSet, Iterable, Tuple

from ldap3.utils.dn import parse_dn
from ldap3.core.exceptions import LDAPInvalidDnError

from identity_sync.adapters.base import RestClient, DirectoryAPIError
from identity_sync.errors import FatalRunError

logger = logging.getLogger(__name__)

ROLE_MANAGER = 'Manager'
ROLE_INDIVIDUAL_CONTRIBUTOR = 'IndividualContributor'


def _dn_components(manager_dn: str) -> List[Tuple[str, str]]:
    """Split a DN into (attribute, value) pairs, falling back to a plain comma split."""
    try:
        return [(attr, value) for attr, value, _ in parse_dn(manager_dn)]
    except (LDAPInvalidDnError, ValueError) as e:
        logger.debug(f"Manager DN '{manager_dn}' is not strict RFC 4514 ({e}); splitting on commas")
        return [(attr.strip(), value.strip()) for attr, _, value in
                (rdn.partition('=') for rdn in manager_dn.split(','))]


def convert_manager_dn_to_email(manager_dn: str, email_domain: Optional[str] = None) -> str:
    """
    Convert a manager DN such as ``cn=Jane_Doe,l=amer,dc=example,dc=com`` to
    ``jane.doe@example.com``.

    The local part is the value of the first RDN, lower-cased with underscores
    turned into dots. The domain is email_domain when given, otherwise the
    DN's dc components joined with dots. DNs that ldap3 rejects (spaces after
    commas, unescaped ``#`` or ``;``) are split on commas instead.

    Args:
        manager_dn: Directory name of the manager
        email_domain: Organization email domain

    Returns:
        Email address, or an empty string for empty or unusable input
    """
    if not manager_dn or not manager_dn.strip():
        return ''

    components = _dn_components(manager_dn.strip())
    if not components:
        return ''

    local_part = components[0][1].strip().lower().replace('_', '.')

    domain = email_domain
    if not domain:
        domain = '.'.join(value.strip().lower() for attr, value in components
                          if attr.strip().lower() == 'dc')
    if not local_part or not domain:
        logger.warning(f"Manager DN '{manager_dn}' does not yield an email address")
        return ''

    return f"{local_part}@{domain}"


def _parse_memberships(value: Any) -> Optional[FrozenSet[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(',')
    return frozenset(tag.strip() for tag in value if tag and tag.strip())


class Person(NamedTuple):
    """One roster entry. Immutable; normalisation returns a new instance."""

    id: str
    first_name: str = ''
    last_name: str = ''
    display_name: str = ''
    manager_ref: str = ''
    direct_report_count: int = 0
    line_of_business: Optional[str] = None
    application_memberships: FrozenSet[str] = frozenset()

    @classmethod
    def from_roster_entry(cls, entry: Dict[str, Any],
                          default_memberships: Iterable[str] = ()) -> 'Person':
        """
        Build a Person from one identity-feed item.

        Raises:
            ValueError: If the entry has no id
        """
        person_id = str(entry.get('id') or '').strip()
        if not person_id:
            raise ValueError(f"Roster entry without id: {entry}")

        memberships = _parse_memberships(entry.get('apps'))
        if memberships is None:
            memberships = frozenset(default_memberships)

        first_name = entry.get('givenname') or ''
        last_name = entry.get('sn') or ''

        return cls(
            id=person_id,
            first_name=first_name,
            last_name=last_name,
            display_name=entry.get('displayname') or f"{first_name} {last_name}".strip() or person_id,
            manager_ref=entry.get('manager') or '',
            direct_report_count=max(int(entry.get('num_directs') or 0), 0),
            line_of_business=entry.get('lob') or None,
            application_memberships=memberships,
        )

    @classmethod
    def minimal(cls, person_id: str) -> 'Person':
        """Synthesized record carrying only the join key (clean mode)."""
        return cls(id=person_id, display_name=person_id)

    @property
    def is_manager(self) -> bool:
        return self.direct_report_count > 0

    @property
    def role(self) -> str:
        return ROLE_MANAGER if self.is_manager else ROLE_INDIVIDUAL_CONTRIBUTOR

    def with_manager_email(self, email_domain: Optional[str] = None) -> 'Person':
        return self._replace(manager_ref=convert_manager_dn_to_email(self.manager_ref, email_domain))


class RosterSource:
    """Fetches the full roster from the identity feed in a single GET."""

    def __init__(self, config: Dict[str, Any], default_memberships: Iterable[str] = ()):
        """
        Args:
            config: Roster configuration (endpoint_url, optional basic auth, TLS options)
            default_memberships: Tags applied to entries without an explicit apps field
        """
        self.config = dict(config)
        self.config.setdefault('name', 'roster')
        self.default_memberships = frozenset(default_memberships)
        self.client = RestClient(self.config, base_url_field='endpoint_url')

    def fetch(self) -> List[Person]:
        """
        Retrieve every person from the identity feed.

        Returns:
            Persons in the order the feed returned them

        Raises:
            FatalRunError: On transport errors, non-2xx responses or a malformed body
        """
        logger.info(f"Retrieving roster from {self.client.host}")
        try:
            response = self.client.request('GET')
            data = response.json()
        except DirectoryAPIError as e:
            raise FatalRunError(f"Getting roster failed: {e}")
        finally:
            self.client.close_connection()

        items = data.get('items') if isinstance(data, dict) else None
        if not isinstance(items, list):
            raise FatalRunError("Roster response has no 'items' array")

        persons = []
        for entry in items:
            try:
                persons.append(Person.from_roster_entry(entry, self.default_memberships))
            except (ValueError, TypeError, AttributeError) as e:
                logger.warning(f"Skipping malformed roster entry: {e}")

        logger.info(f"Retrieved [{len(persons)}] person entries from the roster")
        return persons
