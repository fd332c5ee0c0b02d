"""
Модели базы данных (SQLAlchemy ORM).
"""
import enum
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import (
    BigInteger, Column, DateTime, Enum, ForeignKey, Integer, String, Table, Text, UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Текущее время в UTC (naive, как хранится в БД)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class KeyStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    DISABLED = "DISABLED"
    EXPIRED = "EXPIRED"
    DEPLETED = "DEPLETED"


class ExpirationType(str, enum.Enum):
    NEVER = "NEVER"
    FIXED_DATE = "FIXED_DATE"
    DURATION_FROM_CREATION = "DURATION_FROM_CREATION"
    START_ON_FIRST_USE = "START_ON_FIRST_USE"


class DataLimitResetStrategy(str, enum.Enum):
    NEVER = "NEVER"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


class DakType(str, enum.Enum):
    SELF_MANAGED = "SELF_MANAGED"  # ключи создаются автоматически по запросу
    MANUAL = "MANUAL"              # ключи прикрепляет админ


class LoadBalancerAlgorithm(str, enum.Enum):
    IP_HASH = "IP_HASH"
    RANDOM = "RANDOM"
    ROUND_ROBIN = "ROUND_ROBIN"
    LEAST_LOAD = "LEAST_LOAD"


class RotationInterval(str, enum.Enum):
    NEVER = "NEVER"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    BIWEEKLY = "BIWEEKLY"
    MONTHLY = "MONTHLY"


def _enum(enum_cls) -> Enum:
    # Храним как строку, без нативного ENUM типа БД
    return Enum(enum_cls, native_enum=False, length=30, validate_strings=True)


class Base(DeclarativeBase):
    """Базовый класс для всех моделей"""
    pass


server_tags = Table(
    "server_tags",
    Base.metadata,
    Column("server_id", ForeignKey("servers.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)

dynamic_key_server_tags = Table(
    "dynamic_key_server_tags",
    Base.metadata,
    Column("dynamic_key_id", ForeignKey("dynamic_access_keys.id", ondelete="CASCADE"), primary_key=True),
    Column("tag_id", ForeignKey("tags.id", ondelete="CASCADE"), primary_key=True),
)


class Tag(Base):
    """Тег сервера (для фильтрации пулов)"""
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(50), unique=True)


class Server(Base):
    """Физический VPN сервер (Outline)"""
    __tablename__ = "servers"
    __table_args__ = (
        UniqueConstraint("api_url", "api_cert_sha256", name="uq_server_api"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    location: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Доступ к Outline Management API
    api_url: Mapped[str] = mapped_column(String(255))
    api_cert_sha256: Mapped[str] = mapped_column(String(128))

    # Для клиентских строк подключения
    hostname: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    port_for_new_keys: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Неактивный сервер не участвует в выборе
    is_active: Mapped[bool] = mapped_column(default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    tags: Mapped[list["Tag"]] = relationship(secondary=server_tags, lazy="selectin")
    access_keys: Mapped[list["AccessKey"]] = relationship(back_populates="server")


class AccessKey(Base):
    """Один выданный VPN ключ, привязан ровно к одному серверу"""
    __tablename__ = "access_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    outline_key_id: Mapped[str] = mapped_column(String(64))  # ID ключа на сервере Outline
    name: Mapped[str] = mapped_column(String(100))

    server_id: Mapped[int] = mapped_column(ForeignKey("servers.id"), index=True)

    # Параметры подключения
    access_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # ss://...
    password: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    port: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    prefix: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    # Трафик: used_bytes — набранный с последнего сброса квоты,
    # usage_offset — поправка к счётчику текущего удалённого ключа
    # (после миграции — трафик до переноса, после сброса квоты — минус счётчик сервера)
    used_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    usage_offset: Mapped[int] = mapped_column(BigInteger, default=0)
    data_limit_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    data_limit_reset_strategy: Mapped[DataLimitResetStrategy] = mapped_column(
        _enum(DataLimitResetStrategy), default=DataLimitResetStrategy.NEVER
    )
    last_data_limit_reset: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Срок действия
    expiration_type: Mapped[ExpirationType] = mapped_column(_enum(ExpirationType), default=ExpirationType.NEVER)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    first_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    status: Mapped[KeyStatus] = mapped_column(_enum(KeyStatus), default=KeyStatus.ACTIVE, index=True)

    subscription_token: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    # Членство в пуле динамического ключа
    dynamic_key_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("dynamic_access_keys.id", ondelete="SET NULL"), nullable=True, index=True
    )
    is_self_managed: Mapped[bool] = mapped_column(default=False)  # создан автоматически для пула

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    server: Mapped["Server"] = relationship(back_populates="access_keys", lazy="joined")
    dynamic_key: Mapped[Optional["DynamicAccessKey"]] = relationship(back_populates="access_keys")


class DynamicAccessKey(Base):
    """Динамический ключ: постоянный токен подписки поверх пула ключей"""
    __tablename__ = "dynamic_access_keys"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    type: Mapped[DakType] = mapped_column(_enum(DakType), default=DakType.SELF_MANAGED)

    # Токен подписки
    dynamic_url: Mapped[str] = mapped_column(String(64), unique=True, index=True)

    # Балансировка
    load_balancer_algorithm: Mapped[LoadBalancerAlgorithm] = mapped_column(
        _enum(LoadBalancerAlgorithm), default=LoadBalancerAlgorithm.IP_HASH
    )
    last_selected_key_index: Mapped[int] = mapped_column(Integer, default=-1)

    method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    prefix: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    # Ротация ключей пула
    rotation_enabled: Mapped[bool] = mapped_column(default=False)
    rotation_interval: Mapped[RotationInterval] = mapped_column(_enum(RotationInterval), default=RotationInterval.NEVER)
    last_rotated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_rotation_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    rotation_count: Mapped[int] = mapped_column(Integer, default=0)

    # Срок действия и квота (как у AccessKey)
    used_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    data_limit_bytes: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    expiration_type: Mapped[ExpirationType] = mapped_column(_enum(ExpirationType), default=ExpirationType.NEVER)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    first_used_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    status: Mapped[KeyStatus] = mapped_column(_enum(KeyStatus), default=KeyStatus.ACTIVE, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    server_tags: Mapped[list["Tag"]] = relationship(secondary=dynamic_key_server_tags, lazy="selectin")
    access_keys: Mapped[list["AccessKey"]] = relationship(back_populates="dynamic_key")

    @property
    def tag_ids(self) -> list[int]:
        return [tag.id for tag in self.server_tags]


class OperationLease(Base):
    """Аренда блокировки массовых операций (для нескольких процессов)"""
    __tablename__ = "operation_leases"

    name: Mapped[str] = mapped_column(String(50), primary_key=True)
    holder: Mapped[str] = mapped_column(String(100))
    acquired_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
