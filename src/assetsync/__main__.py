from assetsync.cli import entrypoint

entrypoint()
