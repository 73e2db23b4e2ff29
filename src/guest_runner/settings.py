"""Connection settings from environment variables and .env files."""

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from guest_runner.models import GuestCredentials


class Settings(BaseSettings):
    """vCenter endpoint, target VM and guest login.

    Variables are read without a prefix so existing deployments keep working:
    VCENTER_HOST, VCENTER_USER, VCENTER_PASS, VCENTER_INSECURE,
    VCENTER_DATACENTER, VM_NAME, GUEST_USER, GUEST_PASS.
    A .env file in the working directory is loaded when present; real
    environment variables take precedence over it.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # vCenter
    vcenter_host: str = Field(min_length=1)
    vcenter_user: str = Field(min_length=1)
    vcenter_pass: SecretStr
    vcenter_insecure: bool = False
    vcenter_datacenter: str | None = None

    # Target VM
    vm_name: str = Field(min_length=1)
    guest_user: str = Field(min_length=1)
    guest_pass: SecretStr

    @property
    def guest_credentials(self) -> GuestCredentials:
        return GuestCredentials(username=self.guest_user, password=self.guest_pass)
