from typing import Dict, List, Optional, Tuple

Permission = Tuple[str, str]  # (resource, action)

ROLES = ("attendee", "organizer", "speaker", "sponsor", "admin")

ROLE_PERMISSIONS: Dict[str, List[Permission]] = {
    "attendee": [
        ("profile", "read"),
        ("profile", "update"),
        ("agenda", "read"),
        ("agenda", "create"),
        ("agenda", "update"),
        ("matchmaking", "read"),
        ("tickets", "purchase"),
        ("tickets", "read"),
    ],
    "organizer": [
        ("profile", "read"),
        ("profile", "update"),
        ("events", "create"),
        ("events", "read"),
        ("events", "update"),
        ("events", "delete"),
        ("sessions", "create"),
        ("sessions", "read"),
        ("sessions", "update"),
        ("sessions", "delete"),
        ("dashboard", "read"),
        ("attendees", "read"),
        ("sponsors", "create"),
        ("sponsors", "read"),
        ("sponsors", "update"),
        ("sponsors", "delete"),
    ],
    "speaker": [
        ("profile", "read"),
        ("profile", "update"),
        ("sessions", "read"),
        ("sessions", "update"),  # own sessions only
    ],
    "sponsor": [
        ("profile", "read"),
        ("profile", "update"),
        ("sponsors", "read"),
        ("sponsors", "update"),  # own listing only
    ],
    "admin": [("*", "*")],
}

# Path prefix -> roles allowed through; first match wins
ROUTE_ROLES: Dict[str, Tuple[str, ...]] = {
    "/api/organizer": ("organizer", "admin"),
    "/api/dashboard": ("organizer", "admin"),
    "/api/admin": ("admin",),
}


class PermissionDenied(Exception):
    def __init__(self, role: str, resource: str, action: str):
        super().__init__(f"User with role '{role}' does not have permission to {action} {resource}")
        self.role = role
        self.resource = resource
        self.action = action


def has_permission(role: str, resource: str, action: str) -> bool:
    if role == "admin":
        return True
    permissions = ROLE_PERMISSIONS.get(role, ROLE_PERMISSIONS["attendee"])
    for perm_resource, perm_action in permissions:
        if perm_resource == "*":
            return True
        if perm_resource == resource and perm_action in (action, "*"):
            return True
    return False


def require_permission(role: str, resource: str, action: str) -> None:
    if not has_permission(role, resource, action):
        raise PermissionDenied(role, resource, action)


def can_access_route(role: str, path: str) -> bool:
    for prefix, allowed in ROUTE_ROLES.items():
        if path.startswith(prefix):
            return role in allowed
    return True


def role_from_user(user: Optional[dict]) -> str:
    role = (user or {}).get("role")
    return role if role in ROLES else "attendee"
