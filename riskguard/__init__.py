# riskguard/__init__.py
# ======================
# RiskGuard — fraud & intrusion risk analysis service
#
# Responsibility:
#   - Score feedback-call submissions for fraud likelihood
#   - Scan raw API requests for attack signatures
#   - Guard unreliable collaborators with circuit breakers and retries
#   - Keep a correlation-keyed audit trail of every decision
#
# Entry points:
#   - riskguard.services.build_services(): construct all components once
#   - riskguard.api.app:app: the FastAPI application

__version__ = "1.0.0"
