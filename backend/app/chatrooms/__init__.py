"""Chatrooms: participation, role hierarchy, mutes."""
