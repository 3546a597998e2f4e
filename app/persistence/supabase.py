from aiohttp import ClientError

from app.helpers.config_models.identity import SupabaseModel
from app.helpers.http import aiohttp_session
from app.helpers.logging import logger
from app.models.readiness import ReadinessEnum
from app.persistence.iidentity import IdentityError, IIdentity


class SupabaseIdentity(IIdentity):
    """
    Resolve users with the Supabase Auth REST API.

    Access tokens are validated by Supabase itself, user lookups use the admin API and require the service role key.

    See: https://supabase.com/docs/reference/api/auth
    """

    _config: SupabaseModel

    def __init__(self, config: SupabaseModel):
        logger.info("Using Supabase Auth at %s", config.url)
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        """
        Check the readiness of the Supabase Auth service.
        """
        try:
            session = await aiohttp_session()
            async with session.get(
                headers={"apikey": self._config.anon_key.get_secret_value()},
                url=f"{self._config.url}/auth/v1/health",
            ) as res:
                if res.ok:
                    return ReadinessEnum.OK
                logger.error("Supabase readiness failed with status %s", res.status)
        except ClientError:
            logger.exception("Error requesting Supabase")
        return ReadinessEnum.FAIL

    async def email_for_owner(self, owner_id: str) -> str | None:
        service_key = self._config.service_role_key.get_secret_value()
        try:
            session = await aiohttp_session()
            async with session.get(
                headers={
                    "Authorization": f"Bearer {service_key}",
                    "apikey": service_key,
                },
                url=f"{self._config.url}/auth/v1/admin/users/{owner_id}",
            ) as res:
                if res.status == 404:
                    logger.warning("User %s not found", owner_id)
                    return None
                if not res.ok:
                    raise IdentityError(
                        f"Supabase returned HTTP {res.status} for user {owner_id}"
                    )
                data = await res.json()
        except ClientError as e:
            raise IdentityError(f"Supabase cannot be reached: {e}") from e
        return data.get("email") or None

    async def authenticate(self, token: str) -> str | None:
        try:
            session = await aiohttp_session()
            async with session.get(
                headers={
                    "Authorization": f"Bearer {token}",
                    "apikey": self._config.anon_key.get_secret_value(),
                },
                url=f"{self._config.url}/auth/v1/user",
            ) as res:
                if res.status in (400, 401, 403):  # Malformed, expired or revoked token
                    return None
                if not res.ok:
                    raise IdentityError(
                        f"Supabase returned HTTP {res.status} for token validation"
                    )
                data = await res.json()
        except ClientError as e:
            raise IdentityError(f"Supabase cannot be reached: {e}") from e
        return data.get("id") or None
