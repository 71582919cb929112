"""
Directory lookups used by the lifecycle workflows.

Wraps the employee profile store and the org-structure tables behind the small
contract the workflows need: find employees, flip lifecycle status, resolve a
department head, and turn roles into notification recipients. Workflow code
never writes Employee fields other than `status` and only through
set_employee_status().
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

from sqlalchemy import select

from actions.helpers import append_audit
from cache_layer import cache_get_or_set
from models import AppraisalRecord, Candidate, Department, Employee, PositionAssignment, User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role


EMPLOYEE_STATUSES = {"ACTIVE", "PROBATION", "ON_LEAVE", "SUSPENDED", "INACTIVE"}


def find_employee(db, employee_id: str) -> Optional[Employee]:
    eid = str(employee_id or "").strip()
    if not eid:
        return None
    return db.execute(select(Employee).where(Employee.employeeId == eid)).scalar_one_or_none()


def find_by_employee_number(db, employee_number: str) -> Optional[Employee]:
    num = str(employee_number or "").strip()
    if not num:
        return None
    return db.execute(select(Employee).where(Employee.employeeNumber == num)).scalar_one_or_none()


def resolve_employee(db, key: str) -> Employee:
    """Accepts either an employee id or an employee number."""
    k = str(key or "").strip()
    if not k:
        raise ApiError("BAD_REQUEST", "Employee ID (employeeNumber) is required and must be a non-empty string")
    emp = find_by_employee_number(db, k) or find_employee(db, k)
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found.")
    return emp


def lock_employee(db, employee_id: str) -> Employee:
    emp = (
        db.execute(select(Employee).where(Employee.employeeId == str(employee_id or "")).with_for_update(of=Employee))
        .scalars()
        .first()
    )
    if not emp:
        raise ApiError("NOT_FOUND", "Employee not found.")
    return emp


def set_employee_status(db, emp: Employee, status: str, *, auth: Optional[AuthContext], reason: str = "") -> str:
    """Returns the previous status."""
    new_status = str(status or "").upper().strip()
    if new_status not in EMPLOYEE_STATUSES:
        raise ApiError("BAD_REQUEST", f"Invalid employee status: {status}")

    previous = str(emp.status or "")
    if previous == new_status:
        return previous

    now = iso_utc_now()
    emp.status = new_status
    emp.updatedAt = now
    emp.updatedBy = str(getattr(auth, "userId", "") or "SYSTEM")
    append_audit(
        db,
        entityType="EMPLOYEE",
        entityId=str(emp.employeeId or ""),
        action="EMPLOYEE_STATUS_CHANGE",
        fromState=previous,
        toState=new_status,
        actor=auth,
        at=now,
        remark=reason,
    )
    return previous


def user_for_auth(db, auth: Optional[AuthContext]) -> Optional[User]:
    uid = str(getattr(auth, "userId", "") or "").strip()
    if not uid:
        return None
    return db.execute(select(User).where(User.userId == uid)).scalar_one_or_none()


def actor_employee_id(db, auth: Optional[AuthContext]) -> str:
    usr = user_for_auth(db, auth)
    return str(getattr(usr, "employeeId", "") or "").strip()


def actor_candidate_id(db, auth: Optional[AuthContext]) -> str:
    usr = user_for_auth(db, auth)
    return str(getattr(usr, "candidateId", "") or "").strip()


def contact_for_employee(emp: Optional[Employee]) -> Optional[dict[str, str]]:
    if not emp:
        return None
    email = str(emp.workEmail or "").strip() or str(emp.personalEmail or "").strip()
    if not email:
        return None
    return {"name": str(emp.fullName or emp.employeeNumber or email), "email": email, "employeeId": str(emp.employeeId or "")}


def contact_for_candidate(db, candidate_id: str) -> Optional[dict[str, str]]:
    cand = db.execute(select(Candidate).where(Candidate.candidateId == str(candidate_id or ""))).scalar_one_or_none()
    if not cand or not str(cand.email or "").strip():
        return None
    return {"name": str(cand.fullName or "Candidate"), "email": str(cand.email).strip()}


def recipients_for_roles(db, roles: Iterable[str]) -> list[dict[str, str]]:
    wanted = {normalize_role(r) for r in roles if normalize_role(r)}
    if not wanted:
        return []

    users = (
        db.execute(select(User).where(User.role.in_(sorted(wanted))).where(User.status == "ACTIVE").order_by(User.userId.asc()))
        .scalars()
        .all()
    )
    emp_ids = [str(u.employeeId or "") for u in users if str(u.employeeId or "").strip()]
    emps: dict[str, Employee] = {}
    if emp_ids:
        emps = {str(e.employeeId): e for e in db.execute(select(Employee).where(Employee.employeeId.in_(emp_ids))).scalars().all()}

    uniq: dict[str, dict[str, str]] = {}
    for u in users:
        contact = contact_for_employee(emps.get(str(u.employeeId or "")))
        if not contact and str(u.email or "").strip():
            contact = {"name": str(u.fullName or u.email), "email": str(u.email).strip(), "employeeId": str(u.employeeId or "")}
        if contact:
            uniq[contact["email"].lower()] = contact
    return list(uniq.values())


def _department_head_id(db, department_id: str) -> str:
    dep = db.execute(select(Department).where(Department.departmentId == department_id)).scalar_one_or_none()
    if not dep or not str(dep.headPositionId or "").strip():
        return ""
    assignment = (
        db.execute(
            select(PositionAssignment)
            .where(PositionAssignment.positionId == str(dep.headPositionId))
            .where(PositionAssignment.isActive == True)  # noqa: E712
            .order_by(PositionAssignment.id.desc())
        )
        .scalars()
        .first()
    )
    return str(getattr(assignment, "employeeId", "") or "")


def department_head(db, department_id: str) -> Optional[Employee]:
    dep_id = str(department_id or "").strip()
    if not dep_id:
        return None
    head_id = cache_get_or_set(f"ORG:HEAD:{dep_id}", lambda: _department_head_id(db, dep_id))
    return find_employee(db, head_id) if head_id else None


def line_manager_for(db, emp: Optional[Employee]) -> Optional[Employee]:
    if not emp:
        return None
    head = department_head(db, str(emp.departmentId or ""))
    if head and str(head.employeeId) == str(emp.employeeId):
        return None
    return head


def latest_appraisal(db, employee_id: str) -> Optional[AppraisalRecord]:
    return (
        db.execute(
            select(AppraisalRecord)
            .where(AppraisalRecord.employeeId == str(employee_id or ""))
            .order_by(AppraisalRecord.createdAt.desc())
        )
        .scalars()
        .first()
    )


def serialize_employee_brief(emp: Optional[Employee]) -> dict[str, Any]:
    if not emp:
        return {}
    return {
        "employeeId": str(emp.employeeId or ""),
        "employeeNumber": str(emp.employeeNumber or ""),
        "fullName": str(emp.fullName or ""),
        "workEmail": str(emp.workEmail or ""),
        "departmentId": str(emp.departmentId or ""),
        "status": str(emp.status or ""),
        "startDate": str(emp.startDate or ""),
    }
