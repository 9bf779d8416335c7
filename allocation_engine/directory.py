"""
Agent and Case Directory Module

Read-mostly views of the collection agents and the delinquent cases the
engine allocates. In production these mirror the user-management and
case-sourcing systems; here they are storage-backed so they can be seeded
and queried alongside allocation data.
"""

from datetime import datetime, timezone, date
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
import logging

from .storage import StorageInterface, StorageRecord
from .models import OwnerType
from .exceptions import NotFoundError, ValidationError
from .config import get_config


logger = logging.getLogger(__name__)


@dataclass
class Agent(StorageRecord):
    """Collection agent that can own cases"""
    agent_id: int
    name: str
    geography_code: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    capacity: int = 100
    active: bool = True
    owner_type: OwnerType = OwnerType.USER
    agency_id: Optional[int] = None

    _enum_fields = {'owner_type': OwnerType}

    def serves(self, geographies: Iterable[str]) -> bool:
        """True when any of the agent's geography, state or city is in the list"""
        wanted = {g.strip().lower() for g in geographies if g}
        mine = {v.strip().lower() for v in (self.geography_code, self.state, self.city) if v}
        return bool(wanted & mine)


# Contact fields grouped by the upload update type that may change them
CONTACT_FIELDS = {
    'MOBILE_UPDATE': ('mobile_number', 'alternate_mobile'),
    'EMAIL_UPDATE': ('email', 'alternate_email'),
    'ADDRESS_UPDATE': ('address', 'city', 'state', 'pincode'),
}


@dataclass
class Case(StorageRecord):
    """Delinquent loan case as known to the case-sourcing system"""
    case_id: int
    external_case_id: Optional[str] = None
    loan_account_number: Optional[str] = None
    customer_name: Optional[str] = None
    geography_code: Optional[str] = None
    state: Optional[str] = None
    city: Optional[str] = None
    bucket: Optional[str] = None
    dpd: int = 0
    outstanding: Optional[str] = None     # Decimal as string
    product: Optional[str] = None
    due_date: Optional[date] = None
    priority: Optional[str] = None
    mobile_number: Optional[str] = None
    alternate_mobile: Optional[str] = None
    email: Optional[str] = None
    alternate_email: Optional[str] = None
    address: Optional[str] = None
    pincode: Optional[str] = None

    _date_fields = ('due_date',)


class AgentDirectory:
    """Lookup and registration of agents"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "agents"

    def register_agent(
        self,
        agent_id: int,
        name: str,
        geography_code: Optional[str] = None,
        state: Optional[str] = None,
        city: Optional[str] = None,
        capacity: Optional[int] = None,
        active: bool = True,
        owner_type: OwnerType = OwnerType.USER,
        agency_id: Optional[int] = None
    ) -> Agent:
        """Create or replace an agent entry"""
        if capacity is None:
            capacity = get_config().default_agent_capacity
        if capacity < 0:
            raise ValidationError(f"Capacity must not be negative: {capacity}", field_name="capacity")

        now = datetime.now(timezone.utc)
        existing = self.get_agent(agent_id)
        agent = Agent(
            id=str(agent_id),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            agent_id=agent_id,
            name=name,
            geography_code=geography_code,
            state=state,
            city=city,
            capacity=capacity,
            active=active,
            owner_type=owner_type,
            agency_id=agency_id
        )
        self.storage.save(self.table_name, agent.id, agent.to_dict())
        return agent

    def get_agent(self, agent_id: int) -> Optional[Agent]:
        data = self.storage.load(self.table_name, str(agent_id))
        if data:
            return Agent.from_dict(data)
        return None

    def require_agent(self, agent_id: int, field_name: str = "agent_id") -> Agent:
        """Get an agent or raise NotFoundError"""
        agent = self.get_agent(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent {agent_id} not found", field_name=field_name)
        return agent

    def list_agents(
        self,
        active_only: bool = False,
        geographies: Optional[List[str]] = None,
        agent_ids: Optional[List[int]] = None
    ) -> List[Agent]:
        """List agents sorted by id"""
        agents = [Agent.from_dict(data) for data in self.storage.load_all(self.table_name)]
        if active_only:
            agents = [a for a in agents if a.active]
        if geographies:
            agents = [a for a in agents if a.serves(geographies)]
        if agent_ids:
            wanted = set(agent_ids)
            agents = [a for a in agents if a.agent_id in wanted]
        return sorted(agents, key=lambda a: a.agent_id)

    def set_active(self, agent_id: int, active: bool) -> Agent:
        agent = self.require_agent(agent_id)
        agent.active = active
        agent.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, agent.id, agent.to_dict())
        return agent

    def set_capacity(self, agent_id: int, capacity: int) -> Agent:
        if capacity < 0:
            raise ValidationError(f"Capacity must not be negative: {capacity}", field_name="capacity")
        agent = self.require_agent(agent_id)
        agent.capacity = capacity
        agent.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, agent.id, agent.to_dict())
        return agent


class CaseDirectory:
    """Lookup and registration of cases, plus contact detail maintenance"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage
        self.table_name = "cases"

    def register_case(self, case_id: int, **attributes: Any) -> Case:
        """Create or replace a case entry"""
        now = datetime.now(timezone.utc)
        existing = self.get_case(case_id)
        case = Case(
            id=str(case_id),
            created_at=existing.created_at if existing else now,
            updated_at=now,
            case_id=case_id,
            **attributes
        )
        self.storage.save(self.table_name, case.id, case.to_dict())
        return case

    def get_case(self, case_id: int) -> Optional[Case]:
        data = self.storage.load(self.table_name, str(case_id))
        if data:
            return Case.from_dict(data)
        return None

    def require_case(self, case_id: int, field_name: str = "case_id") -> Case:
        """Get a case or raise NotFoundError"""
        case = self.get_case(case_id)
        if case is None:
            raise NotFoundError(f"Case {case_id} not found", field_name=field_name)
        return case

    def list_cases(self, case_ids: Optional[Iterable[int]] = None) -> List[Case]:
        """List cases sorted by id, optionally restricted to the given ids"""
        if case_ids is not None:
            cases = [self.get_case(case_id) for case_id in case_ids]
            return sorted([c for c in cases if c is not None], key=lambda c: c.case_id)
        cases = [Case.from_dict(data) for data in self.storage.load_all(self.table_name)]
        return sorted(cases, key=lambda c: c.case_id)

    def update_contact(self, case_id: int, changes: Dict[str, str]) -> Dict[str, Dict[str, Any]]:
        """
        Apply contact detail changes to a case.

        Only contact fields may be changed. Returns the before and after
        values of the fields that were touched.
        """
        allowed = {f for group in CONTACT_FIELDS.values() for f in group}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Not a contact field: {', '.join(sorted(unknown))}", field_name=sorted(unknown)[0])

        case = self.require_case(case_id)
        before = {name: getattr(case, name) for name in changes}
        for name, value in changes.items():
            setattr(case, name, value)
        case.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, case.id, case.to_dict())

        logger.debug(f"Updated contact fields {sorted(changes)} on case {case_id}")
        return {'before': before, 'after': dict(changes)}
