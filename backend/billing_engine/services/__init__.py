"""
Business logic services package.

WHY: Invoicing, billing schedules and dunning live here, between the API
routes and the DAOs. Payment provider adapters sit in payment_gateways.
"""
