"""
HTTP surface of vastunwrap: the OpenRTB bid proxy and the unwrap endpoint.
"""
