"""Staff accounts: login, password changes and admin management."""

import logging

from auth import Role, check_password, hash_password, issue_token, public_user
from db import assignments, db_execute, fetch_one, query_all, query_one, transaction
from errors import AuthenticationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

USER_COLUMNS = 'id, username, role, full_name, assigned_class, temp_password, created_at, updated_at'
UPDATABLE = ('full_name', 'role', 'assigned_class')


def get_user(username):
    """Look a user up case-insensitively, password hash included."""
    return query_one(
        f'SELECT {USER_COLUMNS}, password_hash FROM users WHERE LOWER(username) = LOWER(?)',
        (username.strip(),),
    )


def login(username, password):
    user = get_user(username)
    if not user or not check_password(user['password_hash'], password):
        logger.warning("Failed login for %s", username)
        raise AuthenticationError('Invalid username or password')
    if Role.parse(user['role']) is None:
        logger.error("User %s has unknown role %r", user['username'], user['role'])
        raise AuthenticationError('Invalid username or password')
    _touch_last_login(user['id'])
    logger.info("User %s logged in", user['username'])
    return {
        'token': issue_token(user),
        'user': public_user(user),
        'requireChange': bool(user.get('temp_password')),
    }


def _touch_last_login(user_id):
    with transaction() as c:
        db_execute(c, 'UPDATE users SET last_login = NOW() WHERE id = ?', (user_id,))


def change_password(username, current_password, new_password):
    user = get_user(username)
    if not user:
        raise NotFoundError('User not found')
    if not check_password(user['password_hash'], current_password):
        logger.warning("Password change rejected for %s", username)
        raise AuthenticationError('Current password is incorrect')
    if current_password == new_password:
        raise ValidationError('New password must differ from the current password')
    with transaction() as c:
        db_execute(
            c,
            '''UPDATE users SET password_hash = ?, temp_password = FALSE, updated_at = NOW()
               WHERE id = ?''',
            (hash_password(new_password), user['id']),
        )
    logger.info("Password changed for %s", user['username'])
    user['temp_password'] = False
    return {'token': issue_token(user), 'user': public_user(user)}


def list_users():
    return query_all(f'SELECT {USER_COLUMNS} FROM users ORDER BY role, username')


def get_user_by_id(user_id):
    user = query_one(f'SELECT {USER_COLUMNS} FROM users WHERE id = ?', (user_id,))
    if not user:
        raise NotFoundError('User not found')
    return user


def _check_assignment(role, assigned_class):
    if role in (Role.TEACHER.value, Role.COORDINATOR.value) and not assigned_class:
        raise ValidationError('Teachers and coordinators need an assigned class')


def create_user(username, password, role, full_name=None, assigned_class=None):
    """New accounts carry a temporary password that must be changed on first login."""
    _check_assignment(role, assigned_class)
    if role == Role.ADMIN.value:
        assigned_class = None
    with transaction() as c:
        db_execute(
            c,
            f'''INSERT INTO users (username, password_hash, role, full_name, assigned_class,
                                   temp_password, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, TRUE, NOW(), NOW())
                RETURNING {USER_COLUMNS}''',
            (username.strip(), hash_password(password), role, full_name, assigned_class),
        )
        user = fetch_one(c)
    logger.info("User created: %s (%s)", user['username'], role)
    return user


def update_user(user_id, fields):
    clause, params = assignments(fields, UPDATABLE)
    if not clause:
        raise ValidationError('No fields to update')
    with transaction() as c:
        db_execute(c, 'SELECT role, assigned_class FROM users WHERE id = ?', (user_id,))
        existing = fetch_one(c)
        if not existing:
            raise NotFoundError('User not found')
        _check_assignment(
            fields.get('role', existing['role']),
            fields.get('assigned_class', existing['assigned_class']),
        )
        db_execute(
            c,
            f'UPDATE users SET {clause}, updated_at = NOW() WHERE id = ? RETURNING {USER_COLUMNS}',
            params + [user_id],
        )
        return fetch_one(c)


def delete_user(identity, user_id):
    if identity.user_id == user_id:
        raise ValidationError('You cannot delete your own account')
    with transaction() as c:
        db_execute(c, 'DELETE FROM users WHERE id = ? RETURNING username', (user_id,))
        row = fetch_one(c)
    if not row:
        raise NotFoundError('User not found')
    logger.info("User %s deleted by %s", row['username'], identity.username)
