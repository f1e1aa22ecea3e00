from fastapi import APIRouter

from .endpoints import health, observability, policy_hooks, stripe_webhooks

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(stripe_webhooks.router)
router.include_router(policy_hooks.router)
router.include_router(observability.router)
