"""
Schoolspace

Multi-tenant namespace provisioning and tenant resolution for a school
platform. Every school owns an isolated set of tables inside a shared
database, addressed by a dedicated namespace ("school_<code>").
"""

__version__ = "1.0.0"
