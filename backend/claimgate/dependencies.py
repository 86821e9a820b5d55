"""
Claimgate - FastAPI Dependencies
"""
from fastapi import Header, HTTPException, Request

from .services.container import Services


def get_services(request: Request) -> Services:
    """The Services instance built at startup."""
    return request.app.state.services


async def verify_admin_key(request: Request, x_admin_key: str = Header(...)) -> bool:
    """Verify the admin API key for owner operations."""
    if x_admin_key != get_services(request).settings.admin_api_key:
        raise HTTPException(status_code=403, detail="Invalid admin API key")
    return True
