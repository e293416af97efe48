"""
Proxy services: bid endpoint forwarding and bid response processing.
"""
