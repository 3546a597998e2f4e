from enum import Enum
from functools import cached_property

from pydantic import BaseModel, Field, SecretStr, ValidationInfo, field_validator

from app.persistence.iidentity import IIdentity


class ModeEnum(str, Enum):
    LOCAL = "local"
    """Use a static list of users, for development and tests."""
    SUPABASE = "supabase"
    """Use Supabase Auth."""


class LocalUserModel(BaseModel, frozen=True):
    email: str
    token: str | None = None
    """Bearer token accepted for this user by the API."""


class LocalModel(BaseModel, frozen=True):
    users: dict[str, LocalUserModel] = {}
    """Users, by identifier."""

    @cached_property
    def instance(self) -> IIdentity:
        from app.persistence.local_identity import (
            LocalIdentity,
        )

        return LocalIdentity(self)


class SupabaseModel(BaseModel, frozen=True):
    anon_key: SecretStr
    service_role_key: SecretStr
    url: str

    @cached_property
    def instance(self) -> IIdentity:
        from app.persistence.supabase import (
            SupabaseIdentity,
        )

        return SupabaseIdentity(self)


class IdentityModel(BaseModel):
    mode: ModeEnum = ModeEnum.SUPABASE
    local: LocalModel | None = Field(default=None, validate_default=True)
    supabase: SupabaseModel | None = Field(default=None, validate_default=True)

    @field_validator("local")
    @classmethod
    def _validate_local(
        cls,
        local: LocalModel | None,
        info: ValidationInfo,
    ) -> LocalModel | None:
        if not local and info.data.get("mode", None) == ModeEnum.LOCAL:
            raise ValueError("Local identity config required")
        return local

    @field_validator("supabase")
    @classmethod
    def _validate_supabase(
        cls,
        supabase: SupabaseModel | None,
        info: ValidationInfo,
    ) -> SupabaseModel | None:
        if not supabase and info.data.get("mode", None) == ModeEnum.SUPABASE:
            raise ValueError("Supabase config required")
        return supabase

    @cached_property
    def instance(self) -> IIdentity:
        if self.mode == ModeEnum.LOCAL:
            assert self.local
            return self.local.instance

        assert self.supabase
        return self.supabase.instance
