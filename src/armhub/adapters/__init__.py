from .feetech import FeetechBus
from .mqtt_relay import MQTTRelayConsumer, MQTTRelayProducer, MQTTRoomDirectory
from .transport import ServoTransport

__all__ = ["FeetechBus", "MQTTRelayConsumer", "MQTTRelayProducer", "MQTTRoomDirectory", "ServoTransport"]
