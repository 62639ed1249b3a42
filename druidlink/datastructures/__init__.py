"""Shared datastructures and type aliases for druidlink."""
