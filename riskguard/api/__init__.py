# riskguard/api/__init__.py
# ==========================
# HTTP layer — RiskGuard
#
# Responsibility:
#   - FastAPI application factory and the default module-level app
#
# Public API:
#   - create_app(services=None)
#   - app

from riskguard.api.app import app, create_app  # noqa: F401
