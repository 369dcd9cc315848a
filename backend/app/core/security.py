"""Security utilities - password hashing and credential digests"""

import hashlib

import bcrypt


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    try:
        return bcrypt.checkpw(
            plain_password.encode('utf-8'),
            hashed_password.encode('utf-8')
        )
    except ValueError:
        # Stored hash is not a bcrypt hash
        return False


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt()
    ).decode('utf-8')


def hash_token(raw_token: str) -> str:
    """
    One-way digest of a bearer token.

    Only this digest is persisted; the raw token never reaches the database.
    """
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
