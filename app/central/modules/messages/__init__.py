"""
Admin-to-user messaging (announcements) with per-user read tracking.
"""
