"""Payment domain schemas"""

from pydantic import BaseModel


class WebhookAck(BaseModel):
    """Every notification delivery is acknowledged with this body"""

    status: str = "received"
