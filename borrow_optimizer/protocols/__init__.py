"""Lending venue implementations."""
