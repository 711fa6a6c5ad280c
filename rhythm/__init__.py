"""
Rhythm - routine notification scheduler.

Expands recurring routines into alarms, fires reminder notifications and
escalates their wording when the user keeps putting a routine off.
"""

__version__ = "0.3.0"
