# api/users.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from core import credential_store as store
from core.auth_utils import get_token_engine, require_admin
from core.database import get_async_session
from core.errors import ApiError
from core.tokens import AccessClaims, TokenEngine
from models.employee import Employee
from models.user import Role, User
from telemetry.logger import get_logger

logger = get_logger(__name__)

# Every route here is admin-only
router = APIRouter(prefix="/users", tags=["users"], dependencies=[Depends(require_admin)])


# -------------------------------
# Schemas
# -------------------------------
class CreateUserRequest(BaseModel):
    # Internal employee primary key, not the business id
    employeeId: int = Field(ge=1)
    role: Role


class UpdateUserRequest(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Optional[Role] = None
    isActive: Optional[bool] = None


class AccountOut(BaseModel):
    id: int
    employeeId: str
    employeeName: str
    email: str
    officeCollege: Optional[str] = None
    role: str
    isActive: bool
    createdAt: Optional[str] = None
    lastLoginAt: Optional[str] = None
    createdByName: Optional[str] = None


class EmployeeOut(BaseModel):
    id: int
    employeeId: str
    employeeName: str
    email: str
    officeCollege: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def _account(user: User) -> AccountOut:
    emp = user.employee
    creator = user.creator
    return AccountOut(
        id=user.id,
        employeeId=emp.employee_id,
        employeeName=emp.employee_name,
        email=emp.email,
        officeCollege=emp.office_college,
        role=user.role,
        isActive=bool(user.is_active),
        createdAt=_iso(user.created_at),
        lastLoginAt=_iso(user.last_login_at),
        createdByName=creator.employee.employee_name if creator and creator.employee else None,
    )


def _employee(emp: Employee) -> EmployeeOut:
    return EmployeeOut(
        id=emp.id,
        employeeId=emp.employee_id,
        employeeName=emp.employee_name,
        email=emp.email,
        officeCollege=emp.office_college,
    )


async def _get_or_404(session: AsyncSession, user_id: int) -> User:
    user = await store.get_user(session, user_id)
    if user is None:
        raise ApiError(404, "User not found", "USER_NOT_FOUND")
    return user


# -------------------------------
# Routes
# -------------------------------
@router.get("")
async def list_users(session: AsyncSession = Depends(get_async_session)):
    users = await store.list_users(session)
    return {"success": True, "users": [_account(u) for u in users]}


@router.get("/available/employees")
async def available_employees(session: AsyncSession = Depends(get_async_session)):
    employees = await store.list_unbound_employees(session)
    return {"success": True, "employees": [_employee(e) for e in employees]}


@router.get("/{user_id}")
async def get_user(user_id: int, session: AsyncSession = Depends(get_async_session)):
    user = await _get_or_404(session, user_id)
    return {"success": True, "user": _account(user)}


@router.post("", status_code=201)
async def create_user(
    req: CreateUserRequest,
    admin: AccessClaims = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
):
    employee = await store.get_employee(session, req.employeeId)
    if employee is None:
        raise ApiError(404, "Employee not found", "EMPLOYEE_NOT_FOUND")

    if await store.get_user_by_employee_pk(session, req.employeeId) is not None:
        raise ApiError(409, "User account already exists for this employee", "USER_EXISTS")

    user = await store.create_user(session, req.employeeId, req.role.value, admin.account_id)
    logger.info(
        "user_created",
        user_id=user.id,
        employee_pk=req.employeeId,
        role=req.role.value,
        created_by=admin.account_id,
    )
    return {"success": True, "message": "User created successfully", "user": _account(user)}


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    req: UpdateUserRequest,
    admin: AccessClaims = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
    tokens: TokenEngine = Depends(get_token_engine),
):
    user = await _get_or_404(session, user_id)

    # An admin can never lock themselves out
    if user_id == admin.account_id:
        if req.role is not None and req.role.value != user.role:
            raise ApiError(400, "Cannot change your own role", "SELF_ROLE_CHANGE")
        if req.isActive is False:
            raise ApiError(400, "Cannot deactivate your own account", "SELF_DEACTIVATE")

    fields = {}
    if req.role is not None:
        fields["role"] = req.role.value
    if req.isActive is not None:
        fields["is_active"] = req.isActive
    if not fields:
        raise ApiError(400, "No fields to update", "NO_UPDATE")

    await store.update_user(session, user_id, **fields)
    if req.isActive is False:
        await tokens.revoke_all_for_account(session, user_id)

    logger.info("user_updated", user_id=user_id, updated_by=admin.account_id, **fields)
    return {"success": True, "message": "User updated successfully"}


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    admin: AccessClaims = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
    tokens: TokenEngine = Depends(get_token_engine),
):
    if user_id == admin.account_id:
        raise ApiError(400, "Cannot delete your own account", "SELF_DELETE")

    await _get_or_404(session, user_id)

    # Soft delete
    await store.update_user(session, user_id, is_active=False)
    await tokens.revoke_all_for_account(session, user_id)

    logger.info("user_deactivated", user_id=user_id, deleted_by=admin.account_id)
    return {"success": True, "message": "User deactivated successfully"}


@router.put("/{user_id}/reactivate")
async def reactivate_user(
    user_id: int,
    admin: AccessClaims = Depends(require_admin),
    session: AsyncSession = Depends(get_async_session),
):
    user = await _get_or_404(session, user_id)
    if user.is_active:
        raise ApiError(400, "User is already active", "ALREADY_ACTIVE")

    await store.update_user(session, user_id, is_active=True)
    logger.info("user_reactivated", user_id=user_id, reactivated_by=admin.account_id)
    return {"success": True, "message": "User reactivated successfully"}
