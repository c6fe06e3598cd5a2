"""
Session tokens, roles and password hashing.

Tokens are stateless HS256 JWTs carrying the staff member's id, username,
role and assigned class.
"""

import logging
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from enum import Enum
from functools import wraps

import jwt
from flask import g, request
from werkzeug.security import check_password_hash, generate_password_hash

import config
from errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = 'admin'
    TEACHER = 'teacher'
    COORDINATOR = 'coordinator'

    @classmethod
    def parse(cls, value):
        try:
            return cls((value or '').strip().lower())
        except ValueError:
            return None


Identity = namedtuple('Identity', ['user_id', 'username', 'role', 'assigned_class'])


def hash_password(password):
    return generate_password_hash(password)


def check_password(hashed, password):
    if not hashed:
        return False
    return check_password_hash(hashed, password)


def issue_token(user, now=None):
    """Sign a session token for a user row."""
    now = now or datetime.now(timezone.utc)
    payload = {
        'sub': str(user['id']),
        'username': user['username'],
        'role': user['role'],
        'assigned_class': user.get('assigned_class'),
        'iat': now,
        'exp': now + timedelta(hours=config.TOKEN_EXPIRES_HOURS),
    }
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.TOKEN_ALGORITHM)


def decode_token(token):
    """Verify a session token and return the Identity it carries."""
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.TOKEN_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise AuthenticationError('Token has expired') from exc
    except jwt.InvalidTokenError as exc:
        raise AuthenticationError('Invalid or expired token') from exc

    role = Role.parse(payload.get('role'))
    if role is None:
        raise AuthenticationError('Invalid or expired token')
    try:
        user_id = int(payload.get('sub'))
    except (TypeError, ValueError) as exc:
        raise AuthenticationError('Invalid or expired token') from exc
    return Identity(user_id, payload.get('username'), role, payload.get('assigned_class'))


def bearer_token():
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        raise AuthenticationError('Authorization header missing')
    return token.strip()


def current_identity():
    identity = getattr(g, 'identity', None)
    if identity is None:
        raise AuthenticationError()
    return identity


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        g.identity = decode_token(bearer_token())
        return f(*args, **kwargs)
    return decorated


def roles_required(*roles):
    """Allow only the given roles; must sit below login_required."""
    allowed = set(roles)

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            identity = current_identity()
            if identity.role not in allowed:
                names = ' or '.join(sorted(role.value for role in allowed))
                raise AuthorizationError(f'{names.capitalize()} access required')
            return f(*args, **kwargs)
        return decorated
    return decorator


def can_access_class(identity, class_name):
    """Whether the caller may read or write data for ``class_name``."""
    if identity.role is Role.ADMIN:
        return True
    if identity.role in (Role.TEACHER, Role.COORDINATOR):
        return bool(identity.assigned_class) and identity.assigned_class == class_name
    raise AuthorizationError('Unknown role')


def scoped_class(identity, requested=None):
    """
    Resolve the class a list query may cover.

    Admins see whatever they asked for (or everything); other roles are
    pinned to their assigned class and may not ask for another one.
    """
    if identity.role is Role.ADMIN:
        return requested or None
    if requested and requested != identity.assigned_class:
        raise AuthorizationError('You can only access your assigned class')
    if not identity.assigned_class:
        raise AuthorizationError('No class assigned to this account')
    return identity.assigned_class


def public_user(user):
    return {
        'id': user['id'],
        'username': user['username'],
        'role': user['role'],
        'name': user.get('full_name'),
        'assignedClass': user.get('assigned_class'),
    }
