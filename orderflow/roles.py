"""
Roles and the capabilities they carry. Every mutation names the capability it
needs; the guard checks membership in ROLE_CAPABILITIES.
"""
from enum import Enum


class Role(str, Enum):
    CUSTOMER = "customer"
    DRIVER = "driver"
    ADMIN = "admin"


class Capability(str, Enum):
    READ = "read"
    CUSTOMER_WRITE = "customer-write"
    RESTAURANT_WRITE = "restaurant-write"
    DRIVER_WRITE = "driver-write"
    ADMIN_WRITE = "admin-write"


ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.CUSTOMER: frozenset({Capability.READ, Capability.CUSTOMER_WRITE}),
    Role.DRIVER: frozenset({Capability.READ, Capability.DRIVER_WRITE}),
    Role.ADMIN: frozenset({Capability.READ, Capability.RESTAURANT_WRITE, Capability.ADMIN_WRITE}),
}


def has_capability(role: Role, capability: Capability) -> bool:
    return capability in ROLE_CAPABILITIES.get(role, frozenset())
