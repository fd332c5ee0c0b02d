"""
Балансировка между ключами пула и серверами.

Алгоритмы:
- IP_HASH: один и тот же клиент всегда попадает на один ключ (CRC32 от IP)
- RANDOM: случайный выбор
- ROUND_ROBIN: по кругу, курсор хранится в записи динамического ключа
- LEAST_LOAD: сервер с наименьшей нагрузкой, затем случайный ключ на нём

Все функции чистые: кандидаты и статистика передаются вызывающим.
"""

import logging
import random
import zlib
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

logger = logging.getLogger(__name__)


IP_HASH = "IP_HASH"
RANDOM = "RANDOM"
ROUND_ROBIN = "ROUND_ROBIN"
LEAST_LOAD = "LEAST_LOAD"

ALGORITHMS = (IP_HASH, RANDOM, ROUND_ROBIN, LEAST_LOAD)

# Веса оценки нагрузки
KEY_WEIGHT = 0.6
BANDWIDTH_WEIGHT = 0.4


@dataclass
class ServerLoad:
    """Нагрузка сервера (score 0-100, меньше — лучше)"""
    server_id: int
    active_key_count: int
    total_bytes: int
    load_score: float = 0.0


@dataclass
class Selection:
    """Результат выбора: индекс кандидата и новый курсор (для ROUND_ROBIN)"""
    index: int
    algorithm: str
    cursor: Optional[int] = None


def normalize_algorithm(value) -> str:
    """Строка алгоритма; неизвестное значение трактуется как IP_HASH"""
    name = getattr(value, "value", value)
    if name in ALGORITHMS:
        return name
    logger.warning(f"Load balancer: неизвестный алгоритм {value!r}, используем IP_HASH")
    return IP_HASH


# === ПРОСТЫЕ АЛГОРИТМЫ ===

def ip_hash_index(client_ip: str, count: int) -> int:
    """CRC32 от адреса клиента по модулю количества кандидатов"""
    if count <= 0:
        raise ValueError("no candidates")
    if count == 1:
        return 0
    return zlib.crc32((client_ip or "").encode("utf-8")) % count


def random_index(count: int, rng: Optional[random.Random] = None) -> int:
    if count <= 0:
        raise ValueError("no candidates")
    return (rng or random).randrange(count)


def round_robin_index(last_index: Optional[int], count: int) -> int:
    """Следующий индекс после last_index"""
    if count <= 0:
        raise ValueError("no candidates")
    if last_index is None:
        last_index = -1
    return (last_index + 1) % count


# === LEAST_LOAD ===

def calculate_load_score(
    active_keys: int,
    total_bytes: int,
    max_keys: int,
    max_bytes: int,
) -> float:
    """
    Оценка нагрузки сервера.

    60% — плотность ключей, 40% — трафик, оба нормированы на максимум
    по группе. Результат 0..100 с одним знаком после запятой.
    """
    key_score = active_keys / max_keys if max_keys > 0 else 0.0
    bandwidth_score = total_bytes / max_bytes if max_bytes > 0 else 0.0

    combined = (key_score * KEY_WEIGHT + bandwidth_score * BANDWIDTH_WEIGHT) * 100
    return min(100.0, round(combined * 10) / 10)


def compute_server_loads(stats: Iterable) -> list[ServerLoad]:
    """
    Посчитать score для набора серверов.

    stats — объекты с полями server_id, active_key_count, total_bytes.
    Максимумы считаются по переданной группе и не бывают меньше 1.
    """
    loads = [
        ServerLoad(
            server_id=s.server_id,
            active_key_count=int(s.active_key_count or 0),
            total_bytes=int(s.total_bytes or 0),
        )
        for s in stats
    ]
    if not loads:
        return []

    max_keys = max(max(load.active_key_count for load in loads), 1)
    max_bytes = max(max(load.total_bytes for load in loads), 1)

    for load in loads:
        load.load_score = calculate_load_score(
            load.active_key_count, load.total_bytes, max_keys, max_bytes
        )
    return loads


def select_least_loaded_server(
    loads: Sequence[ServerLoad],
    rng: Optional[random.Random] = None,
) -> Optional[ServerLoad]:
    """Сервер с минимальным score; при равенстве — случайный из равных"""
    if not loads:
        return None

    min_score = min(load.load_score for load in loads)
    least_loaded = [load for load in loads if load.load_score == min_score]
    selected = (rng or random).choice(least_loaded)

    logger.debug(
        f"Load balancer: выбран сервер {selected.server_id} "
        f"(score: {selected.load_score}, keys: {selected.active_key_count})"
    )
    return selected


def least_load_index(
    candidates: Sequence,
    stats: Iterable,
    rng: Optional[random.Random] = None,
) -> int:
    """
    Индекс ключа на наименее нагруженном сервере.

    candidates — ключи с полем server_id; stats — статистика серверов.
    Серверы без статистики считаются пустыми.
    """
    if not candidates:
        raise ValueError("no candidates")
    if len(candidates) == 1:
        return 0

    groups: dict[int, list[int]] = {}
    for index, candidate in enumerate(candidates):
        groups.setdefault(candidate.server_id, []).append(index)

    known = {s.server_id: s for s in stats if s.server_id in groups}
    group_stats = [
        known.get(server_id) or ServerLoad(server_id=server_id, active_key_count=0, total_bytes=0)
        for server_id in groups
    ]

    best = select_least_loaded_server(compute_server_loads(group_stats), rng)
    indices = groups[best.server_id]
    return (rng or random).choice(indices)


# === ДИСПЕТЧЕР ===

def select_candidate(
    algorithm,
    candidates: Sequence,
    client_ip: str = "127.0.0.1",
    last_index: Optional[int] = None,
    stats: Iterable = (),
    rng: Optional[random.Random] = None,
) -> Selection:
    """
    Выбрать кандидата по алгоритму пула.

    Для ROUND_ROBIN возвращает новый курсор, который вызывающий
    обязан сохранить в записи динамического ключа.
    """
    count = len(candidates)
    if count == 0:
        raise ValueError("no candidates")

    name = normalize_algorithm(algorithm)

    if name == RANDOM:
        return Selection(index=random_index(count, rng), algorithm=name)

    if name == ROUND_ROBIN:
        index = round_robin_index(last_index, count)
        return Selection(index=index, algorithm=name, cursor=index)

    if name == LEAST_LOAD:
        return Selection(index=least_load_index(candidates, stats, rng), algorithm=name)

    return Selection(index=ip_hash_index(client_ip, count), algorithm=name)
