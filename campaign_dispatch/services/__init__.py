"""Dispatch service layer modules."""
