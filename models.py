"""Database models touched by the hub ingestion pipeline."""
from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, Text, ForeignKey, Enum, UniqueConstraint, Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base
import enum


class DeviceStatus(str, enum.Enum):
    """Connection status of a wearable device."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


class User(Base):
    """Device owner. Only the push token is used by the pipeline."""
    __tablename__ = "users"

    email = Column(String(100), primary_key=True)
    name = Column(String(50), nullable=True)
    fcm_token = Column(Text, nullable=True)  # FCM registration token, cleared when invalid
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    devices = relationship("Device", back_populates="user")


class Hub(Base):
    """Gateway that relays wearable telemetry over MQTT."""
    __tablename__ = "hubs"

    address = Column(String(100), primary_key=True)  # MAC-like hub id (topic segment 2)
    name = Column(String(50), nullable=True)
    user_email = Column(String(100), ForeignKey("users.email"), nullable=True, index=True)
    status = Column(Enum(DeviceStatus), nullable=False, default=DeviceStatus.UNKNOWN)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    devices = relationship("Device", back_populates="hub")


class Device(Base):
    """Registered wearable device (created by the CRUD API, mutated on disconnect)."""
    __tablename__ = "devices"

    address = Column(String(100), primary_key=True)  # MAC address or platform UUID
    name = Column(String(50), nullable=True)
    # Null hub means direct peer-to-peer pairing with the phone
    hub_address = Column(String(100), ForeignKey("hubs.address"), nullable=True, index=True)
    user_email = Column(String(100), ForeignKey("users.email"), nullable=False, index=True)
    status = Column(Enum(DeviceStatus), nullable=False, default=DeviceStatus.UNKNOWN, index=True)
    last_seen_at = Column(DateTime, nullable=True)
    last_connected_at = Column(DateTime, nullable=True)
    last_disconnected_at = Column(DateTime, nullable=True)  # doubles as disconnect cooldown marker
    battery = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    hub = relationship("Hub", back_populates="devices")
    user = relationship("User", back_populates="devices")


class MvsDevice(Base):
    """Pending (not yet registered) device reported by a hub.

    Rows are never deleted: a device the hub stops reporting is marked
    ``mvs = False`` with its sample count and first-seen time cleared.
    """
    __tablename__ = "mvs_devices"
    __table_args__ = (
        UniqueConstraint("hub_id", "mac_address", name="uq_mvs_devices_hub_mac"),
        Index("ix_mvs_devices_hub_id", "hub_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    hub_id = Column(String(100), nullable=False)
    mac_address = Column(String(50), nullable=False)
    mvs = Column("MVS", Boolean, nullable=False, default=False)
    length = Column(Integer, nullable=True)  # sample count observed by the hub
    first_time = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
