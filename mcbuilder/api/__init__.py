# mcbuilder/api/__init__.py
"""
Auto-import submodules so that
    from mcbuilder.api import servers
works even when they haven't been imported elsewhere.
"""

from importlib import import_module as _import

for _name in ("servers",):
    _import(f"{__name__}.{_name}")

del _import, _name
