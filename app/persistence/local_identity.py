from secrets import compare_digest

from app.helpers.config_models.identity import LocalModel
from app.helpers.logging import logger
from app.models.readiness import ReadinessEnum
from app.persistence.iidentity import IIdentity


class LocalIdentity(IIdentity):
    """
    Static users from the configuration, for development and tests.
    """

    _config: LocalModel

    def __init__(self, config: LocalModel):
        logger.info("Using local identity with %s users", len(config.users))
        self._config = config

    async def readiness(self) -> ReadinessEnum:
        return ReadinessEnum.OK

    async def email_for_owner(self, owner_id: str) -> str | None:
        user = self._config.users.get(owner_id)
        return user.email if user else None

    async def authenticate(self, token: str) -> str | None:
        for user_id, user in self._config.users.items():
            if user.token and compare_digest(user.token, token):
                return user_id
        return None
