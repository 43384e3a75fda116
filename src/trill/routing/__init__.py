"""Routing — compiled route table with O(path-depth) matching.

Routes are declared during setup (decorators, scopes, resources, configure
functions) and compiled into an immutable lookup structure when the app
freezes.
"""
