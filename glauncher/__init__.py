"""Main module for the glauncher API.

The launch pipeline is split in small modules that can be used on their own:
`manifest` resolves versions and their parents, `graph` expands a resolved version
into artifact requests, `download` fetches them into the `store`, `assemble` builds
the command line and `process` supervises the game. The `launcher` module composes
all of them.
"""

LAUNCHER_NAME = "glauncher"
LAUNCHER_VERSION = "0.1.0"
