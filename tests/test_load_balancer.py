"""
Тесты балансировщика — выбор ключа пула и оценка нагрузки серверов
"""
import random
import zlib
from dataclasses import dataclass

import pytest

from database.repository import ServerStats
from vpn import load_balancer
from vpn.load_balancer import (
    IP_HASH, LEAST_LOAD, RANDOM, ROUND_ROBIN,
    calculate_load_score, compute_server_loads, ip_hash_index, least_load_index,
    normalize_algorithm, round_robin_index, select_candidate, select_least_loaded_server,
)

GB = 1024 ** 3


@dataclass
class Candidate:
    id: int
    server_id: int


def stats(server_id: int, keys: int, total: int) -> ServerStats:
    return ServerStats(server_id=server_id, server_name=f"s{server_id}", active_key_count=keys, total_bytes=total)


class TestIpHash:
    """IP_HASH"""

    def test_deterministic_for_same_ip(self):
        """Один и тот же IP всегда получает один и тот же индекс"""
        picks = {ip_hash_index("203.0.113.7", 5) for _ in range(20)}
        assert len(picks) == 1

    def test_matches_crc32(self):
        """Индекс = CRC32(ip) mod n"""
        assert ip_hash_index("10.0.0.1", 7) == zlib.crc32(b"10.0.0.1") % 7

    def test_single_candidate_short_circuit(self):
        assert ip_hash_index("anything", 1) == 0

    def test_empty_candidates_rejected(self):
        with pytest.raises(ValueError):
            ip_hash_index("10.0.0.1", 0)

    def test_dispatch_is_deterministic(self):
        candidates = [Candidate(i, 1) for i in range(4)]
        first = select_candidate(IP_HASH, candidates, client_ip="198.51.100.1")
        second = select_candidate(IP_HASH, candidates, client_ip="198.51.100.1")
        assert first.index == second.index
        assert first.cursor is None


class TestRoundRobin:
    """ROUND_ROBIN"""

    def test_wraps_around(self):
        """Курсор 2 при 3 кандидатах -> следующий индекс 0"""
        assert round_robin_index(2, 3) == 0

    def test_first_selection_starts_at_zero(self):
        assert round_robin_index(-1, 3) == 0
        assert round_robin_index(None, 3) == 0

    def test_returns_new_cursor(self):
        candidates = [Candidate(i, 1) for i in range(3)]
        selection = select_candidate(ROUND_ROBIN, candidates, last_index=2)
        assert selection.index == 0
        assert selection.cursor == 0

    def test_cursor_beyond_shrunk_pool(self):
        """Курсор от большего пула не выходит за границы"""
        assert round_robin_index(7, 3) == 2


class TestRandom:
    """RANDOM"""

    def test_index_in_range(self):
        rng = random.Random(1)
        candidates = [Candidate(i, 1) for i in range(4)]
        for _ in range(50):
            selection = select_candidate(RANDOM, candidates, rng=rng)
            assert 0 <= selection.index < 4
            assert selection.cursor is None


class TestLoadScore:
    """Оценка нагрузки"""

    def test_weights(self):
        """0.6 * ключи + 0.4 * трафик, 0..100, один знак"""
        assert calculate_load_score(2, 100, 10, 1000) == 16.0
        assert calculate_load_score(10, 1000, 10, 1000) == 100.0
        assert calculate_load_score(0, 0, 10, 1000) == 0.0

    def test_rounding(self):
        assert calculate_load_score(1, 0, 3, 1) == 20.0
        assert calculate_load_score(1, 1, 3, 3) == 33.3

    def test_all_empty_servers(self):
        """Пустые серверы: максимумы не меньше 1, деления на ноль нет"""
        loads = compute_server_loads([stats(1, 0, 0), stats(2, 0, 0)])
        assert [load.load_score for load in loads] == [0.0, 0.0]

    def test_tie_break_random_among_equal(self):
        loads = compute_server_loads([stats(1, 0, 0), stats(2, 0, 0), stats(3, 5, 0)])
        picked = {select_least_loaded_server(loads, random.Random(seed)).server_id for seed in range(30)}
        assert picked == {1, 2}

    def test_no_servers(self):
        assert select_least_loaded_server([]) is None


class TestLeastLoad:
    """LEAST_LOAD"""

    def test_prefers_empty_server(self):
        """Сервер A (0 ключей, 0 байт) против B (10 ключей, 10 GB) — всегда A"""
        candidates = [Candidate(1, 100), Candidate(2, 200), Candidate(3, 200)]
        server_stats = [stats(100, 0, 0), stats(200, 10, 10 * GB)]

        for seed in range(25):
            index = least_load_index(candidates, server_stats, random.Random(seed))
            assert candidates[index].server_id == 100

    def test_random_member_on_chosen_server(self):
        candidates = [Candidate(1, 100), Candidate(2, 100), Candidate(3, 200)]
        server_stats = [stats(100, 0, 0), stats(200, 10, 10 * GB)]

        picked = {least_load_index(candidates, server_stats, random.Random(seed)) for seed in range(40)}
        assert picked == {0, 1}

    def test_missing_stats_counts_as_empty(self):
        candidates = [Candidate(1, 100), Candidate(2, 200)]
        index = least_load_index(candidates, [stats(200, 3, GB)], random.Random(0))
        assert candidates[index].server_id == 100

    def test_dispatch(self):
        candidates = [Candidate(1, 100), Candidate(2, 200)]
        selection = select_candidate(
            LEAST_LOAD, candidates, stats=[stats(100, 5, GB), stats(200, 0, 0)], rng=random.Random(3)
        )
        assert candidates[selection.index].server_id == 200
        assert selection.cursor is None


class TestAlgorithmFallback:
    """Неизвестный алгоритм"""

    def test_unknown_behaves_as_ip_hash(self):
        assert normalize_algorithm("WEIGHTED") == IP_HASH
        candidates = [Candidate(i, 1) for i in range(5)]
        selection = select_candidate("WEIGHTED", candidates, client_ip="192.0.2.10")
        assert selection.algorithm == IP_HASH
        assert selection.index == ip_hash_index("192.0.2.10", 5)

    def test_enum_value_accepted(self):
        from database.models import LoadBalancerAlgorithm
        assert normalize_algorithm(LoadBalancerAlgorithm.ROUND_ROBIN) == load_balancer.ROUND_ROBIN
