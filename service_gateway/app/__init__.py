"""
API Gateway Service package for NPHIES integration.

The gateway fronts provider requests to the NPHIES exchange, enforcing:
- Caller authentication: HS256 session tokens issued at login
- Domain validation: every submission is checked before any network call
- Rate limiting: fixed window per client IP
- Retries and token caching for resilient exchange calls

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.adapters: HTTP clients for the exchange and the AI assistant.
- app.caching: Access token cache and its stores.
- app.ratelimit: Fixed window limiter and middleware.
- app.domain: Request models, validators and NPHIES error codes.
"""
