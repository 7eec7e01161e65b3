"""
                        Services Module

Business logic behind the HTTP layer.

Services:
    - aggregator: platform webhook ingestion, mapping, callbacks, config
    - events: WebSocket fan-out of order/kitchen events
    - orders: order numbering and status transitions
    - kitchen: kitchen ticket status and order readiness
"""
