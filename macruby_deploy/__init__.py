"""macruby-deploy.

Compiles an application's Ruby sources and embeds the MacRuby runtime (and
selected gems) inside its ``.app`` bundle, relinked so the bundle runs without
a system-wide MacRuby install.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
