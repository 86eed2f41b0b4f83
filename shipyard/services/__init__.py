"""Pipeline services.

Services implement the release pipeline, coordinating between the domain
layer (core/) and the external collaborators reached through platform/
(cargo, cross, git, gh).
"""
