"""
Periodic snapshots of Spotify listening profiles into PostgreSQL.
"""
