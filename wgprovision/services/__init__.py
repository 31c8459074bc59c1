"""
Provisioning services: address pools and the provisioning workflow.
"""
