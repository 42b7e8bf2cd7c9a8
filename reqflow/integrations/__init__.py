"""reqflow.integrations — External service gateway modules.

All outbound HTTP calls go through a gateway in this package, never via
bare `requests` calls in services or blueprints. Every call is:
  - Bounded by a timeout
  - Reported as a structured result instead of raising on HTTP errors
  - Logged with the event identity it carries

Current gateways:
  automation_gateway.AutomationGateway — outbox delivery to the automation consumer
"""
