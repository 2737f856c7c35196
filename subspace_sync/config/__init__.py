"""Application configuration"""

import logging
from dotenv import load_dotenv

load_dotenv()

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] [%(name)s]: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logging.basicConfig(format=LOG_FORMAT, datefmt=DATE_FORMAT, level=logging.INFO)
logging.getLogger("aiohttp").setLevel(logging.WARNING)

from .remote import Remote
from .cache import Cache
from .members import Members
from .profiles import Profiles
from .notifications import Notifications
from .reorder import Reorder

remote = Remote()
cache = Cache()
members = Members()
profiles = Profiles()
notifications = Notifications()
reorder = Reorder()


class Config:
    remote = remote
    cache = cache
    members = members
    profiles = profiles
    notifications = notifications
    reorder = reorder


__all__ = [
    "remote",
    "cache",
    "members",
    "profiles",
    "notifications",
    "reorder",
    "Config",
]
