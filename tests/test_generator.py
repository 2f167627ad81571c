"""
Tests for task and canary generation and the pool top-up.
"""
import pytest
from sqlalchemy import func, select

from computegrid.core.economics import get_task_reward
from computegrid.core.errors import UnsupportedCanaryType
from computegrid.core.integrity import canonical_hash, is_canary_id
from computegrid.core.storage import CanaryTask, ComputeTask, session_scope
from computegrid.core.tasks import (
    generate_canary,
    generate_hash_task,
    generate_matrix_task,
    generate_ml_inference_task,
    generate_task,
)
from computegrid.core.tasks.kernels import (
    deterministic_matrix,
    iterate_hash,
    multiply_matrices,
    round_half_up,
    seeded_random,
)


class TestKernels:
    def test_seeded_random_is_reproducible(self):
        a, b = seeded_random(7), seeded_random(7)
        assert [a() for _ in range(5)] == [b() for _ in range(5)]

    def test_seeded_random_range(self):
        rng = seeded_random(12345)
        assert all(0.0 <= rng() < 1.0 for _ in range(1000))

    def test_round_half_up(self):
        assert round_half_up(0.0625) == 0.063
        assert round_half_up(2.5, 0) == 3
        assert round_half_up(-2.5, 0) == -2

    def test_multiply_identity(self):
        identity = [[1, 0], [0, 1]]
        m = [[1.5, 2.0], [3.0, 4.25]]
        assert multiply_matrices(m, identity) == m

    def test_multiply_shape_mismatch(self):
        with pytest.raises(ValueError):
            multiply_matrices([[1, 2]], [[1, 2]])

    def test_iterate_hash(self):
        once = iterate_hash("abc", 1)
        assert once == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        assert iterate_hash("abc", 2) == iterate_hash(once, 1)

    def test_deterministic_matrix_values(self):
        m = deterministic_matrix(3, 4, 5)
        assert len(m) == 4 and all(len(row) == 5 for row in m)
        assert all(0 <= v < 10 for row in m for v in row)


class TestGenerateTask:
    def test_matrix_task(self):
        spec = generate_matrix_task(difficulty=2, seed=99)
        assert spec.input_data["size"] == 16
        assert spec.input_data["matrixA"] == deterministic_matrix(99, 16, 16)
        assert spec.input_data["matrixB"] == deterministic_matrix(100, 16, 16)
        assert spec.expected_output_hash == canonical_hash(
            multiply_matrices(spec.input_data["matrixA"], spec.input_data["matrixB"])
        )
        assert spec.reward_credits == get_task_reward("matrix_mult", 2)
        assert spec.requires_gpu is False

    def test_large_matrix_requires_gpu(self):
        assert generate_matrix_task(difficulty=4, seed=1).requires_gpu is True

    def test_hash_task(self):
        spec = generate_hash_task(difficulty=1, data="seed-data")
        assert spec.input_data["iterations"] == 1000
        assert spec.expected_result == {"hash": iterate_hash("seed-data", 1000)}
        assert spec.expected_output_hash == canonical_hash(spec.expected_result)

    def test_ml_task_has_no_expected_hash(self):
        spec = generate_ml_inference_task(difficulty=1, seed=5)
        assert spec.expected_output_hash is None
        assert spec.requires_gpu is True
        assert spec.model_url and spec.model_hash
        assert len(spec.input_data["input_data"]) == 1000

    def test_task_ids_unique(self):
        ids = {generate_task("hash_compute", 1).task_uuid for _ in range(50)}
        assert len(ids) == 50

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            generate_task("video_render", 1)

    @pytest.mark.parametrize("difficulty", [0, -1, 1.5])
    def test_bad_difficulty(self, difficulty):
        with pytest.raises(ValueError):
            generate_task("matrix_mult", difficulty)


class TestGenerateCanary:
    def test_matrix_canary_known_result(self):
        canary = generate_canary("matrix_mult", seed=11)
        assert is_canary_id(canary.task_uuid)
        assert canary.requires_gpu is True
        assert canary.known_result == multiply_matrices(
            canary.input_data["matrixA"], canary.input_data["matrixB"]
        )
        assert canary.known_output_hash == canonical_hash(canary.known_result)

    def test_hash_canary_known_result(self):
        canary = generate_canary("hash_compute", seed=250)
        assert canary.requires_gpu is False
        assert canary.input_data["iterations"] == 150
        assert canary.known_result == {
            "hash": iterate_hash(canary.input_data["data"], canary.input_data["iterations"])
        }

    def test_ml_canary_is_refused(self):
        with pytest.raises(UnsupportedCanaryType):
            generate_canary("ml_inference")

    def test_unsupported_canary_is_a_value_error(self):
        with pytest.raises(ValueError):
            generate_canary("unknown_type")


class TestTaskGenerator:
    def test_create_and_store(self, service, session_factory):
        spec = service.generator.create_and_store_task("matrix_mult", difficulty=1, priority=9)
        with session_scope(session_factory) as session:
            row = session.execute(
                select(ComputeTask).where(ComputeTask.task_uuid == spec.task_uuid)
            ).scalar_one()
            assert row.status == "pending"
            assert row.priority == 9
            assert row.redundancy_count == 3
            assert row.expected_output_hash == spec.expected_output_hash
            assert row.expires_at > row.created_at

    def test_store_rejects_bad_redundancy(self, service):
        with pytest.raises(ValueError):
            service.generator.store_task(generate_task("hash_compute", 1), redundancy=0)

    def test_ensure_task_pool_tops_up(self, service):
        created = service.generator.ensure_task_pool(min_per_type=4)
        assert created == 8
        assert service.generator.pending_counts() == {"matrix_mult": 4, "hash_compute": 4}

        # already full
        assert service.generator.ensure_task_pool(min_per_type=4) == 0

    def test_ensure_canary_pool(self, service, session_factory):
        assert service.generator.ensure_canary_pool(min_per_type=3) == 6
        with session_scope(session_factory) as session:
            counts = dict(session.execute(
                select(CanaryTask.task_type, func.count(CanaryTask.id)).group_by(CanaryTask.task_type)
            ).all())
        assert counts == {"matrix_mult": 3, "hash_compute": 3}

    def test_identical_canary_is_stored_once(self, service, session_factory):
        first = service.generator.create_canary_task("matrix_mult", seed=77)
        second = service.generator.create_canary_task("matrix_mult", seed=77)
        assert first.task_uuid == second.task_uuid
        with session_scope(session_factory) as session:
            count = session.execute(select(func.count(CanaryTask.id))).scalar_one()
        assert count == 1
