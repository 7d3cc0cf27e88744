import hashlib
import hmac
import secrets
from typing import Optional, Tuple


def hash_ip(ip: str) -> str:
    return hashlib.sha256(ip.encode("utf-8")).hexdigest()


# Hash de senha com PBKDF2 (sem dependências externas)
def hash_password(password: str, salt: Optional[str] = None) -> Tuple[str, str]:
    salt = salt or secrets.token_hex(16)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt.encode("utf-8"), 100_000)
    return salt, dk.hex()


def random_password_hash() -> str:
    """
    Usuário criado por webhook não escolheu senha: gera uma aleatória
    (ele redefine pelo fluxo de "esqueci a senha").
    """
    salt, hashed = hash_password(secrets.token_hex(8))
    return f"{salt}${hashed}"


def username_from_email(email: str) -> str:
    local = (email or "").split("@", 1)[0] or "user"
    return f"{local}_{secrets.token_hex(4)}"


def safe_compare(a: str, b: str) -> bool:
    return hmac.compare_digest((a or "").encode(), (b or "").encode())


def hmac_sha256_hex(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def preview(secret: Optional[str], size: int = 4) -> str:
    # Para logs: nunca o segredo inteiro
    if not secret:
        return "não definido"
    return f"{secret[:size]}..."
