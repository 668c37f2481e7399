"""
Firebase push notifications for simulated trades
"""
import logging
import os
from typing import Optional

from .models import Trade, BotConfig

logger = logging.getLogger(__name__)

TRADE_TITLES = {
    "open_long": "📈 LONG opened",
    "open_short": "📉 SHORT opened",
    "close_long": "✅ LONG closed",
    "close_short": "✅ SHORT closed",
    "stop_loss": "🛑 Stop loss",
    "take_profit": "🎯 Take profit",
    "liquidation": "⚠️ Liquidation",
}


class FirebaseNotifier:
    """Push notifications for trades; disabled when no credentials are set"""

    def __init__(self, cred_path: Optional[str] = None):
        self.initialized = False
        cred_path = cred_path or os.getenv("FIREBASE_CREDENTIALS_PATH")
        try:
            import firebase_admin
            from firebase_admin import credentials, messaging

            if cred_path and os.path.exists(cred_path):
                cred = credentials.Certificate(cred_path)
                firebase_admin.initialize_app(cred)
                self.initialized = True
                self.messaging = messaging
                logger.info("✅ Firebase initialized successfully")
            else:
                logger.warning("⚠️  Firebase credentials not found - notifications disabled")
        except Exception as e:
            logger.warning(f"⚠️  Firebase initialization failed: {e}")

    async def send_trade_notification(self, trade: Trade, config: BotConfig):
        """Send push notification for a trade event"""
        if not self.initialized or trade.action not in TRADE_TITLES:
            return

        body = f"{config.symbol} @ ${trade.price:.2f}"
        if trade.pnl is not None:
            body += f" | PnL: ${trade.pnl:.2f}"
        if trade.balance_after is not None:
            body += f" | Balance: ${trade.balance_after:.2f}"

        try:
            message = self.messaging.Message(
                notification=self.messaging.Notification(
                    title=f"{TRADE_TITLES[trade.action]} - {config.name}",
                    body=body,
                ),
                topic=f"paper_trades_{config.id}",
            )
            response = self.messaging.send(message)
            logger.info(f"📱 Notification sent: {response}")
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")
