"""Utilities shared by agents, runners and the CLI.

This package hosts modules that are transport-agnostic (KPI logging,
bandwidth accounting, resource monitoring).
"""
