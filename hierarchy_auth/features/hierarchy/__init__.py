"""
Organization hierarchy feature module.

Five fixed levels (union, conference, church, team, service) stored as a single
tree with materialized paths, plus subtree moves and path maintenance.
"""
