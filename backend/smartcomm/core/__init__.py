"""Core configuration, startup validation and tenant middleware"""
