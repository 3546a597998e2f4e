from enum import Enum

from pydantic import BaseModel


class ReadinessEnum(str, Enum):
    FAIL = "fail"
    """The service is not ready."""
    OK = "ok"
    """The service is ready."""


class ReadinessCheckModel(BaseModel):
    id: str
    status: ReadinessEnum


class ReadinessModel(BaseModel):
    checks: list[ReadinessCheckModel]
    status: ReadinessEnum

    @classmethod
    def from_checks(cls, checks: list[ReadinessCheckModel]) -> "ReadinessModel":
        """
        Aggregate the checks, if one of them fails, the whole readiness fails.
        """
        status = ReadinessEnum.OK
        if any(check.status != ReadinessEnum.OK for check in checks):
            status = ReadinessEnum.FAIL
        return cls(checks=checks, status=status)
