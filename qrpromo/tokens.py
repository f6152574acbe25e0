import secrets

ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz23456789"


def generate_token(length: int = 12) -> str:
    return "".join(secrets.choice(ALPHABET) for _ in range(length))
