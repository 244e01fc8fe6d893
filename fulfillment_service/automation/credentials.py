import secrets
import string
from dataclasses import dataclass

PASSWORD_ALPHABET = string.ascii_letters + string.digits


@dataclass(frozen=True)
class ExternalCredentials:
    external_id: str
    login: str
    password: str


class CredentialIssuer:
    """Mints merchant-site identities from the OS CSPRNG."""

    def __init__(self, password_length: int = 16) -> None:
        self.password_length = password_length

    def issue(self) -> ExternalCredentials:
        return ExternalCredentials(
            external_id=f"ERS_{secrets.token_hex(8).upper()}",
            login=f"user_{secrets.token_hex(6)}",
            password="".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(self.password_length)),
        )
