"""
assetsync: publish local NFT asset bundles to IPFS.

Layout:
    <assets_root>/<asset_id>/metadata.json         bundle descriptor (has an "image" field)
    <assets_root>/<asset_id>/<image>               payload
    <assets_root>/data/<network>/state.json        asset_id -> {"uri": "ipfs://...", ...}
"""

__version__ = "0.1.0"

STATE_FILENAME = "state.json"
LOCK_FILENAME = ".sync.lock"
DEFAULT_METADATA_FILENAME = "metadata.json"
DEFAULT_STATE_DIR = "data"
DEFAULT_MEDIA_TYPE = "image/jpeg"
