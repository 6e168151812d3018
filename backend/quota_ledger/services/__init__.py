"""
Business logic services package.

WHY: Services hold the ledger, provisioning and billing rules, separated
from API routes and data access (API → Service → DAO). Mail host, DNS and
payment gateway clients live here too so services can take them as
constructor arguments and tests can substitute them.
"""
