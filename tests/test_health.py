"""Smoke test for application startup."""


def test_app_imports() -> None:
    """Verify the app can be imported without errors."""
    from cardgrader.main import app

    assert app.title == "CardGrader"


def test_routes_registered() -> None:
    """Card, credential and probe routes are mounted."""
    from cardgrader.main import app

    paths = {route.path for route in app.routes}

    assert {"/cards", "/cards/{card_id}", "/credentials", "/health", "/ready"} <= paths
