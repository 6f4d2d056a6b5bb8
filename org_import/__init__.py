"""Organization structure bulk import.

Reads Departments / Positions workbooks, validates them, plans
parent-before-child persistence waves and upserts the result into PostgreSQL.
"""

__version__ = "0.1.0"
