from shipping_bridge.core.config import settings
from shipping_bridge.core.database import get_db, Base, get_db_session
