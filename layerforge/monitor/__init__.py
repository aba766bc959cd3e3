"""layerforge build monitor - Rich renderables for stage tables and reports.

Modules
-------
renderer
    ``BuildRenderer`` turns stage records, plans, configurations and build
    reports into Rich tables and panels.
"""
