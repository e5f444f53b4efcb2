import logging

from telegram import Bot
from telegram.error import TelegramError

from cvd_monitor.notifier.formatter import format_alert
from cvd_monitor.storage.database import Database

logger = logging.getLogger(__name__)

DISPATCH_BATCH_LIMIT = 100


class TelegramNotifier:
    def __init__(self, bot_token: str, chat_id: str):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.bot = Bot(token=bot_token)

    async def send_message(self, text: str) -> None:
        await self.bot.send_message(
            chat_id=self.chat_id,
            text=text,
            parse_mode="HTML",
        )


async def dispatch_pending_alerts(
    db: Database, notifier: TelegramNotifier, limit: int = DISPATCH_BATCH_LIMIT
) -> int:
    """推送未发送的告警

    按时间从旧到新发送，每条发送成功后立即标记；发送失败的保持待推送，下次重试。

    Returns:
        成功发送的条数
    """
    alerts = await db.get_pending_alerts(limit)
    if not alerts:
        logger.info("No pending alerts to dispatch")
        return 0

    logger.info(f"Found {len(alerts)} pending alerts (batch limit: {limit})")
    sent = 0
    for alert in alerts:
        try:
            await notifier.send_message(format_alert(alert))
        except TelegramError as e:
            logger.error(f"Failed to send alert {alert.id} ({alert.symbol} {alert.category}): {e}")
            continue
        assert alert.id is not None
        await db.mark_alert_dispatched(alert.id)
        sent += 1

    logger.info(f"Dispatched {sent}/{len(alerts)} alerts")
    return sent
