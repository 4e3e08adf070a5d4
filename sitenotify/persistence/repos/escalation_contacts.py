from __future__ import annotations

from datetime import datetime

from sqlalchemy import case, delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from sitenotify.domain.models import CompanyEscalationContact, SupervisorAssignment


# Lower rank wins when several company contacts could take an escalation.
_ROLE_RANK = {"supervisor": 0, "company_admin": 1, "admin": 2}
ESCALATION_CONTACT_ROLES = frozenset(_ROLE_RANK)


async def set_supervisor(
    session: AsyncSession,
    *,
    recipient_id: str,
    supervisor_id: str,
    company_id: str | None,
    now: datetime,
) -> SupervisorAssignment:
    assignment = await session.get(SupervisorAssignment, recipient_id)
    if assignment is None:
        assignment = SupervisorAssignment(recipient_id=recipient_id)
        session.add(assignment)
    assignment.supervisor_id = supervisor_id
    assignment.company_id = company_id
    assignment.updated_at = now
    await session.flush()
    return assignment


async def get_supervisor(session: AsyncSession, recipient_id: str) -> SupervisorAssignment | None:
    return await session.get(SupervisorAssignment, recipient_id, populate_existing=True)


async def add_company_contact(
    session: AsyncSession,
    *,
    company_id: str,
    contact_id: str,
    role: str,
    now: datetime,
) -> CompanyEscalationContact:
    contact = await session.get(CompanyEscalationContact, (company_id, contact_id))
    if contact is None:
        contact = CompanyEscalationContact(company_id=company_id, contact_id=contact_id, created_at=now)
        session.add(contact)
    contact.role = role
    await session.flush()
    return contact


async def remove_company_contact(session: AsyncSession, *, company_id: str, contact_id: str) -> bool:
    result = await session.execute(
        delete(CompanyEscalationContact).where(
            CompanyEscalationContact.company_id == company_id,
            CompanyEscalationContact.contact_id == contact_id,
        )
    )
    return result.rowcount == 1


async def list_company_contacts(session: AsyncSession, company_id: str) -> list[CompanyEscalationContact]:
    # Supervisors first, then company admins, then platform admins; oldest entry breaks ties.
    rank = case(_ROLE_RANK, value=CompanyEscalationContact.role, else_=len(_ROLE_RANK))
    result = await session.execute(
        select(CompanyEscalationContact)
        .where(CompanyEscalationContact.company_id == company_id)
        .order_by(rank.asc(), CompanyEscalationContact.created_at.asc(), CompanyEscalationContact.contact_id.asc())
    )
    return list(result.scalars().all())
