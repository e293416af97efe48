"""
Proxy API Routers.

Modules:
    health  – Health, readiness and liveness checks
    openrtb – OpenRTB bid proxy (POST /openrtb2)
    unwrap  – Single ad-tag resolution (GET /unwrap)
"""
