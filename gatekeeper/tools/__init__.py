from .clock import LocalTimeTool
from .discord import DiscordMembershipTool
from .geo import GeoSybilTool
from .onchain import NftOwnershipTool, TokenBalanceTool, WalletStatsTool

__all__ = [
    "DiscordMembershipTool",
    "GeoSybilTool",
    "LocalTimeTool",
    "NftOwnershipTool",
    "TokenBalanceTool",
    "WalletStatsTool",
]
