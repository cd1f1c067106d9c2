"""
SmartComm
Automated customer outreach decisions for service businesses.
"""
