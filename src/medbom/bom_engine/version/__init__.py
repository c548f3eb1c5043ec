from medbom.bom_engine.version.chain import ChainMember, VersionChain
from medbom.bom_engine.version.service import BOMVersionManager, TRANSITIONS

__all__ = ["BOMVersionManager", "ChainMember", "TRANSITIONS", "VersionChain"]
