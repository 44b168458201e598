"""
PMS Core
========

Channel-manager synchronization (Beds24) and guest online check-in access
for the property management system.
"""

__version__ = "0.1.0"
