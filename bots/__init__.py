# Bot behaviours: one variant per job type
from typing import Dict, Type

from .base_bot import BaseBot
from .command_bot import CommandBot
from .ping_bot import PingBot

BOT_REGISTRY: Dict[str, Type[BaseBot]] = {
    CommandBot.bot_type: CommandBot,
    PingBot.bot_type: PingBot,
}


def register_bot(bot_type: str, bot_class: Type[BaseBot]):
    """Registrar un comportamiento para un tipo de job"""
    BOT_REGISTRY[bot_type] = bot_class


def create_bot(bot_type: str, config: Dict = None) -> BaseBot:
    """Factory: instancia el comportamiento de un tipo de job"""
    bot_class = BOT_REGISTRY.get(bot_type)
    if bot_class is None:
        raise KeyError(f"No bot registered for {bot_type}")
    return bot_class(config=config)


def available_bots():
    return sorted(BOT_REGISTRY)
