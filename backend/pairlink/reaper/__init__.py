"""Zombie session reaper."""
