from azure.identity.aio import DefaultAzureCredential

from app.helpers.cache import lru_acache
from app.helpers.http import azure_transport


@lru_acache()
async def credential() -> DefaultAzureCredential:
    """
    Azure credential, used when no access key is configured.

    Resolves in order environment variables, managed identity and local developer tools.
    """
    return DefaultAzureCredential(
        # Performance
        transport=await azure_transport(),
    )
