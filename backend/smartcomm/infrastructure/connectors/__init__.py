"""Connectors for outbound messaging gateways"""
