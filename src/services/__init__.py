"""MentorGate service layer.

The verification pipeline lives in :mod:`src.services.verification`.
"""
