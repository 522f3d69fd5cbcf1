from functools import lru_cache

import bcrypt

PASSWORD_MIN_LEN = 6

def hash_password(plain_password: str, rounds: int = 12) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    # bcrypt expects bytes
    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")

def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(
            plain_password.encode("utf-8"),
            password_hash.encode("utf-8")
        )
    except ValueError:
        # malformed stored hash
        return False

@lru_cache(maxsize=4)
def dummy_hash(rounds: int) -> str:
    """A throwaway hash so unknown emails cost the same bcrypt work as known ones."""
    return hash_password("not-a-real-password", rounds=rounds)
