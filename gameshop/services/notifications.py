from typing import Any, Optional

import aiohttp
import discord

from ..utils.constants import Colors
from ..utils.logger import logger


def format_vnd(amount: Any) -> str:
    try:
        value = int(amount)
    except (TypeError, ValueError):
        return str(amount)
    return f"{value:,}".replace(",", ".") + " ₫"


class OrderNotifier:
    """Posts order events to the staff Discord channel through a webhook."""

    def __init__(self, webhook_url: Optional[str]):
        self.webhook_url = (webhook_url or "").strip()

    async def send_order_log(self, order: dict[str, Any], delivered: bool) -> bool:
        if not self.webhook_url:
            logger.warning("Order webhook is not configured. Set ORDER_WEBHOOK_URL.")
            return False

        embed = discord.Embed(
            title="New Website Order",
            color=Colors.SUCCESS if delivered else Colors.WARNING,
        )
        embed.add_field(name="Order ID", value=f"`{order.get('orderId', 'N/A')}`", inline=True)
        embed.add_field(name="Total", value=format_vnd(order.get("amount")), inline=True)
        embed.add_field(name="Product", value=f"`{order.get('productCode', 'N/A')}`", inline=True)
        embed.add_field(name="Customer", value=str(order.get("email") or "N/A")[:1024], inline=False)
        embed.add_field(name="Delivery", value="Sent by email" if delivered else "Needs manual delivery", inline=False)

        try:
            async with aiohttp.ClientSession() as session:
                webhook = discord.Webhook.from_url(self.webhook_url, session=session)
                await webhook.send(embed=embed, username="Shop Orders")
        except (discord.HTTPException, aiohttp.ClientError, ValueError) as exc:
            logger.error(f"Order webhook delivery failed: {exc}")
            return False
        return True
