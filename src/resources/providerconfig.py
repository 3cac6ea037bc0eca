"""ProviderConfig - where and as whom to connect."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from errors import CredentialsError
from ssh import Credentials


class ProviderConfig(BaseModel):
    """A credentials record owned by the config store."""

    name: str
    address: str = ""
    username: str = ""
    password: Optional[str] = Field(default=None, repr=False)
    private_key: Optional[str] = Field(default=None, repr=False)

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> "ProviderConfig":
        return cls.model_validate(record)

    def credentials(self) -> Credentials:
        """
        Extract the address and principal/secret.

        Raises:
            CredentialsError: If any part is missing.
        """
        if not self.address:
            raise CredentialsError(f"ProviderConfig {self.name} has no address")
        if not self.username:
            raise CredentialsError(f"ProviderConfig {self.name} has no username")
        if not self.password and not self.private_key:
            raise CredentialsError(
                f"ProviderConfig {self.name} has neither a password nor a private key"
            )
        return Credentials(
            address=self.address,
            username=self.username,
            password=self.password,
            private_key=self.private_key,
        )
