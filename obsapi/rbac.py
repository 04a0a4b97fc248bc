"""Role-based access control over tenants' resources."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from http import HTTPStatus
from typing import IO, Any, Iterable, TypeVar

import yaml

_log = logging.getLogger(__name__)

_E = TypeVar("_E", bound=Enum)


class RBACError(Exception):
    """Raised when RBAC data cannot be read or parsed."""


class Permission(str, Enum):
    """A permission on a tenant."""

    WRITE = "write"
    READ = "read"

    def __str__(self) -> str:
        return self.value


class SubjectKind(str, Enum):
    """The kind of a subject bound to a role."""

    USER = "user"
    GROUP = "group"

    def __str__(self) -> str:
        return self.value


def _coerce(enum_cls: type[_E], value: Any) -> _E | Any:
    """Turn a known value into its enum member; leave unknown values as they are."""
    try:
        return enum_cls(value)
    except ValueError:
        return value


@dataclass(frozen=True)
class Subject:
    """A user or group that has been bound to a role."""

    name: str
    kind: SubjectKind | str

    def __post_init__(self) -> None:
        object.__setattr__(self, "kind", _coerce(SubjectKind, self.kind))


@dataclass
class Role:
    """A set of permissions on resources of tenants."""

    name: str
    resources: list[str] = field(default_factory=list)
    tenants: list[str] = field(default_factory=list)
    permissions: list[Permission | str] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.permissions = [_coerce(Permission, p) for p in self.permissions]


@dataclass
class RoleBinding:
    """Binds a set of roles to a set of subjects."""

    name: str
    subjects: list[Subject] = field(default_factory=list)
    roles: list[str] = field(default_factory=list)


@dataclass
class _TenantAccess:
    read: set[Subject] = field(default_factory=set)
    write: set[Subject] = field(default_factory=set)


class Authorizer:
    """Answers whether a subject may use a permission on a tenant's resource."""

    def __init__(
        self,
        resources: dict[str, dict[str, _TenantAccess]],
        logger: logging.Logger | None = None,
    ) -> None:
        self._resources = resources
        self._logger = logger or _log

    def authorize(
        self,
        subject: str,
        groups: Iterable[str] | None,
        permission: Permission | str,
        resource: str,
        tenant: str,
        tenant_id: str,
        token: str,
    ) -> tuple[int, bool, str]:
        """Return (HTTP status, allowed, extra data) for the request."""
        denied = (int(HTTPStatus.FORBIDDEN), False, "")

        tenants = self._resources.get(resource)
        if tenants is None:
            self._logger.debug(
                "authorization: resource %r unknown; valid resources are %s",
                resource,
                sorted(self._resources),
            )
            return denied

        access = tenants.get(tenant)
        if access is None:
            self._logger.debug(
                "authorization: tenant %r unknown (%d valid tenants for resource %r)",
                tenant,
                len(tenants),
                resource,
            )
            return denied

        permission = _coerce(Permission, permission)
        if permission is Permission.READ:
            allowed: set[Subject] = access.read
        elif permission is Permission.WRITE:
            allowed = access.write
        else:
            allowed = set()

        groups = list(groups or ())
        if Subject(subject, SubjectKind.USER) in allowed:
            return int(HTTPStatus.OK), True, ""
        if any(Subject(group, SubjectKind.GROUP) in allowed for group in groups):
            return int(HTTPStatus.OK), True, ""

        self._logger.debug("authorization: %r unknown; groups %s unknown", subject, groups)
        return denied


def new_authorizer(
    roles: Iterable[Role] | None,
    role_bindings: Iterable[RoleBinding] | None,
    logger: logging.Logger | None = None,
) -> Authorizer:
    """Build an Authorizer from roles and the bindings of subjects to them."""
    logger = logger or _log
    roles_by_name = {role.name: role for role in roles or ()}
    resources: dict[str, dict[str, _TenantAccess]] = {}

    for binding in role_bindings or ():
        for role_name in binding.roles:
            role = roles_by_name.get(role_name)
            if role is None:
                logger.warning("Unexpected role %r", role_name)
                continue

            for resource_name in role.resources:
                tenants = resources.setdefault(resource_name, {})
                for tenant_name in role.tenants:
                    access = tenants.setdefault(tenant_name, _TenantAccess())
                    for subject in binding.subjects:
                        for permission in role.permissions:
                            if permission is Permission.READ:
                                access.read.add(subject)
                            elif permission is Permission.WRITE:
                                access.write.add(subject)
                            else:
                                logger.warning(
                                    "Ignoring unexpected role permission %r for subject %r "
                                    "in tenant %r in role %r",
                                    permission,
                                    subject,
                                    tenant_name,
                                    role_name,
                                )

    return Authorizer(resources, logger)


def _items(data: dict[str, Any], key: str, kind: type) -> list[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, kind) for v in value):
        raise RBACError(f"could not parse RBAC data: {key!r} must be a list of {kind.__name__}")
    return value


def _string(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise RBACError(f"could not parse RBAC data: {key!r} must be a string")
    return value


def _role(data: dict[str, Any]) -> Role:
    return Role(
        name=_string(data, "name"),
        resources=_items(data, "resources", str),
        tenants=_items(data, "tenants", str),
        permissions=_items(data, "permissions", str),
    )


def _binding(data: dict[str, Any]) -> RoleBinding:
    subjects = [
        Subject(_string(s, "name"), _string(s, "kind")) for s in _items(data, "subjects", dict)
    ]
    return RoleBinding(
        name=_string(data, "name"),
        subjects=subjects,
        roles=_items(data, "roles", str),
    )


def parse(stream: IO[str] | IO[bytes], logger: logging.Logger | None = None) -> Authorizer:
    """Read RBAC roles and role bindings from YAML and build an Authorizer."""
    try:
        raw = stream.read()
    except OSError as err:
        raise RBACError(f"could not read RBAC data: {err}") from err

    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as err:
        raise RBACError(f"could not parse RBAC data: {err}") from err

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise RBACError("could not parse RBAC data: top level must be a mapping")

    roles = [_role(r) for r in _items(data, "roles", dict)]
    bindings = [_binding(b) for b in _items(data, "roleBindings", dict)]
    return new_authorizer(roles, bindings, logger)