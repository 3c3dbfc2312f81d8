"""
Server-side feature flags read by the client to conditionally render functionality.

A flag can be narrowed to roles and/or subscription plans; empty lists mean "everyone".
"""
