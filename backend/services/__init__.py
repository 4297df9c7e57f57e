"""
Services package - Business logic layer.

This package contains all business logic services that operate on Django models
but are decoupled from the HTTP/WebSocket layer.

Modules:
    - exceptions: error taxonomy shared by every service
    - ride_management: ride and errand task lifecycle
    - bidding: driver bids and single-winner acceptance
    - pricing: fare table, pricing configuration, cost distribution

Import from the subpackages directly.
"""
