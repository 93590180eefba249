"""Helpers shared by test modules. Import only after conftest has set the environment."""

from api.auth import create_access_token

TEST_CRON_TOKEN = "test-cron-secret"


def auth_headers_for(user: dict) -> dict:
    """Bearer header for a user dict from the make_user fixture."""
    token = create_access_token(user["id"], user["username"], user["role"], user["email"])
    return {"Authorization": f"Bearer {token}"}
