from .base import Consumer, Driver, Producer
from .remote import RemoteConsumer, RemoteProducer
from .usb import USBConsumer, USBProducer

__all__ = ["Consumer", "Driver", "Producer", "RemoteConsumer", "RemoteProducer", "USBConsumer", "USBProducer"]
