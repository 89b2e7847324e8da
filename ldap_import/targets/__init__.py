"""
Target stores the importer can write users and groups to.

Each module in this package provides a TargetStore subclass; the
``target.module`` configuration option selects which one is used.
"""
