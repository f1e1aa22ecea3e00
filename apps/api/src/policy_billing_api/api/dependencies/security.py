from fastapi import Header, HTTPException, status

from policy_billing_api.core.settings import settings


async def require_hook_api_key(x_collection_module_key: str = Header("", alias="X-Collection-Module-Key")) -> None:
    if not settings.hook_api_key:
        return

    if x_collection_module_key != settings.hook_api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid collection module key",
        )