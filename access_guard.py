# =================================================================
#   Online Teaching ERP - Access Guard
#   Pure role/ownership predicates. No I/O: callers pre-fetch the
#   owner id of the resource they are about to mutate.
# =================================================================

from enum import Enum

from errors import Forbidden, Unauthorized


class Role(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    STUDENT = 'student'

    @classmethod
    def parse(cls, value):
        """Returns the Role for `value`, or None if it names no known role."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Actor:
    """The authenticated caller, built from verified token claims."""

    def __init__(self, user_id, email, role):
        self.user_id = int(user_id)
        self.email = email
        self.role = role

    @classmethod
    def from_claims(cls, claims):
        role = Role.parse(claims.get('role'))
        if role is None or claims.get('userId') is None:
            raise Unauthorized('Token does not carry a valid identity')
        return cls(claims['userId'], claims.get('email'), role)

    @property
    def is_admin(self):
        return self.role is Role.ADMIN

    def __repr__(self):
        return f'<Actor {self.user_id} ({self.role.value})>'


def require_authenticated(actor):
    if actor is None:
        raise Unauthorized('You must be logged in to access this resource')
    return actor


def require_role(actor, *roles):
    """Raises Forbidden unless the actor holds one of `roles`."""
    require_authenticated(actor)
    if actor.role not in roles:
        required = ' or '.join(role.value for role in roles)
        raise Forbidden(f'This resource requires {required} role. Your role: {actor.role.value}')
    return actor


def can_manage(actor, owner_id):
    """
    Ownership predicate for teacher-scoped mutations.

    admin   -> always
    teacher -> only resources they own
    student -> never
    """
    if actor.role is Role.ADMIN:
        return True
    if actor.role is Role.TEACHER:
        return owner_id is not None and int(owner_id) == actor.user_id
    if actor.role is Role.STUDENT:
        return False
    raise ValueError(f'Unhandled role: {actor.role!r}')


def can_access_own(actor, subject_id):
    """Self-scoped reads: a user may see their own records, an admin anyone's."""
    if actor.role is Role.ADMIN:
        return True
    if actor.role in (Role.TEACHER, Role.STUDENT):
        return subject_id is not None and int(subject_id) == actor.user_id
    raise ValueError(f'Unhandled role: {actor.role!r}')


def ensure_can_manage(actor, owner_id, message='You can only manage your own sessions'):
    require_authenticated(actor)
    if not can_manage(actor, owner_id):
        raise Forbidden(message)


def ensure_can_access_own(actor, subject_id, message='You can only access your own resources'):
    require_authenticated(actor)
    if not can_access_own(actor, subject_id):
        raise Forbidden(message)
