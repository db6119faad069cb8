"""
Small helpers shared across the application: paths, formatting, playlists.
"""
