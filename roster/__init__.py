"""
roster - rank progression and attendance accrual service.
"""

__version__ = "1.0.0"
