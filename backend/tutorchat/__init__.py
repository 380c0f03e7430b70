"""
TutorChat - real-time student/instructor messaging core.
"""

__version__ = "1.0.0"
