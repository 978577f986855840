"""
Tests for chain reorganizations.

After any reorg the snapshot must equal a fresh replay of the new
canonical chain.
"""

from vaultindex.core.abi import ISSUER_ROLE
from vaultindex.core.reorg import ReorgHandler
from vaultindex.core.source import InMemoryChain
from vaultindex.db.store import InMemoryEntityStore
from vaultindex.schemas.entities import EntityKind

from .scenario import (
    ALICE,
    DOC_A,
    DOC_B,
    HOLDER,
    ISSUER,
    OTHER_ISSUER,
    REQUESTER,
    T0,
    make_controller,
    sync_store,
)


def block_a(chain):
    chain.emit("DIDRegistered", did=ALICE, controller=HOLDER)
    chain.emit("RoleGranted", did=ALICE, role=ISSUER_ROLE, timestamp=T0 + 1)
    return chain.mine()


def blocks_b_c(chain):
    chain.emit("DocumentRegistered", document_id=DOC_A, issuer=ISSUER, holder=HOLDER, timestamp=T0 + 2)
    chain.mine()
    chain.emit("ShareRequested", document_id=DOC_A, requester=REQUESTER, timestamp=T0 + 3)
    chain.emit("AuthenticationSuccessful", did=ALICE, role=ISSUER_ROLE, timestamp=T0 + 4)
    return chain.mine()


def blocks_b_c_forked(chain):
    chain.emit("DocumentRegistered", document_id=DOC_B, issuer=OTHER_ISSUER, holder=HOLDER, timestamp=T0 + 5)
    chain.mine()
    chain.emit("RoleRevoked", did=ALICE, role=ISSUER_ROLE, timestamp=T0 + 6)
    chain.emit("IssuerRegistered", issuer=OTHER_ISSUER, timestamp=T0 + 7)
    return chain.mine()


def canonical_fork_snapshot():
    """Snapshot of A, B', C' replayed on a chain that never saw B, C."""
    fresh = InMemoryChain()
    block_a(fresh)
    blocks_b_c_forked(fresh)
    return sync_store(fresh).snapshot()


class TestAnnouncedReorg:
    """Retractions delivered by the source."""

    def test_replaced_blocks_match_fresh_replay(self, chain, store, metrics):
        block_a(chain)
        blocks_b_c(chain)
        controller = make_controller(chain, store, metrics=metrics, batch_blocks=1)
        controller.sync()
        assert store.load(EntityKind.DOCUMENT, DOC_A) is not None

        chain.reorg(2)
        blocks_b_c_forked(chain)
        results = controller.sync()
        controller.close()

        assert any(r.rolled_back for r in results)
        assert metrics.reorgs_handled >= 1
        assert store.snapshot() == canonical_fork_snapshot()
        assert store.load(EntityKind.DOCUMENT, DOC_A) is None
        assert store.find(EntityKind.ROLE, did=ALICE, granted=True) == []
        assert store.get_checkpoint().block_hash == chain.get_block_hash(3)
        store.verify_integrity()

    def test_reorg_inside_one_batch(self, chain, store):
        """A fork inside the only checkpoint's range replays from genesis."""
        block_a(chain)
        blocks_b_c(chain)
        controller = make_controller(chain, store, batch_blocks=100)
        controller.sync()
        assert len(store.list_checkpoints()) == 1

        chain.reorg(2)
        blocks_b_c_forked(chain)
        controller.sync()
        controller.close()

        assert store.snapshot() == canonical_fork_snapshot()
        store.verify_integrity()

    def test_shorter_fork(self, chain, store):
        """The new chain is shorter than what was indexed."""
        block_a(chain)
        blocks_b_c(chain)
        controller = make_controller(chain, store, batch_blocks=1)
        controller.sync()

        chain.reorg(2)
        results = controller.sync()
        controller.close()

        assert results[-1].caught_up
        assert store.get_checkpoint().scanned_block == 1

        fresh = InMemoryChain()
        block_a(fresh)
        assert store.snapshot() == sync_store(fresh).snapshot()


class TestSilentReorg:
    """Forks only visible as a changed block hash."""

    def test_hash_mismatch_rolls_back(self, chain, store, metrics):
        block_a(chain)
        blocks_b_c(chain)
        controller = make_controller(chain, store, metrics=metrics, batch_blocks=1)
        controller.sync()

        chain.silent_reorg(2)
        blocks_b_c_forked(chain)
        results = controller.sync()
        controller.close()

        reorg = results[0].reorg
        assert reorg is not None
        assert reorg.reason == "block hash mismatch"
        assert reorg.fork_block == 2
        assert reorg.batches_undone == 2
        assert metrics.reorgs_handled == 1
        assert store.snapshot() == canonical_fork_snapshot()

    def test_canonical_head_is_left_alone(self, chain, store):
        block_a(chain)
        sync_controller = make_controller(chain, store)
        sync_controller.sync()
        sync_controller.close()

        outcome = ReorgHandler(store, chain).check_canonical()
        assert not outcome.detected
        assert not outcome.rolled_back

    def test_genesis_store_has_nothing_to_check(self, chain, store):
        assert not ReorgHandler(store, chain).check_canonical().detected


class TestRetractions:
    """ReorgHandler.handle_retractions on its own."""

    def test_rolls_back_below_fork(self, chain, store):
        block_a(chain)
        blocks_b_c(chain)
        controller = make_controller(chain, store, batch_blocks=1)
        controller.sync()
        controller.close()

        removed = [log.model_copy(update={"removed": True}) for log in chain.get_logs(2, 3)]
        outcome = ReorgHandler(store, chain).handle_retractions(removed)

        assert outcome.rolled_back
        assert outcome.fork_block == 2
        assert store.get_checkpoint().scanned_block == 1
        assert store.load(EntityKind.DOCUMENT, DOC_A) is None
        assert store.load(EntityKind.IDENTITY, ALICE) is not None

    def test_retraction_above_scanned_height_is_ignored(self, chain, store):
        block_a(chain)
        blocks_b_c(chain)
        controller = make_controller(chain, store)
        controller.sync(until_block=1)
        controller.close()
        before = store.get_checkpoint()

        removed = [log.model_copy(update={"removed": True}) for log in chain.get_logs(3, 3)]
        outcome = ReorgHandler(store, chain).handle_retractions(removed)

        assert outcome.detected
        assert not outcome.rolled_back
        assert store.get_checkpoint().sequence == before.sequence

    def test_no_retractions(self, chain, store):
        assert not ReorgHandler(store, chain).handle_retractions([]).detected

    def test_retracted_batch_is_refetched(self, chain, store):
        """A batch carrying retractions is abandoned, not committed."""
        block_a(chain)
        controller = make_controller(chain, store, batch_blocks=1)
        controller.sync()

        blocks_b_c(chain)
        chain.reorg(2)
        blocks_b_c_forked(chain)

        head = store.get_checkpoint()
        batch = controller.fetch(2, 2)
        result = controller.process(batch, head)
        assert not result.committed
        assert result.reorg is not None and not result.reorg.rolled_back
        assert store.get_checkpoint().sequence == head.sequence

        controller.sync()
        controller.close()
        assert store.snapshot() == canonical_fork_snapshot()

    def test_rollback_below_with_nothing_older(self, chain, store):
        block_a(chain)
        controller = make_controller(chain, store, batch_blocks=100)
        controller.sync()
        controller.close()

        outcome = ReorgHandler(store, chain).rollback_below(0, reason="test")
        assert outcome.rolled_back_to == -1
        assert store.get_checkpoint().is_genesis
        assert store.snapshot() == {}


def test_indexing_resumes_on_fresh_store_after_reorg(chain):
    """The same chain read by a new store after the fork agrees."""
    block_a(chain)
    blocks_b_c(chain)
    chain.reorg(2)
    blocks_b_c_forked(chain)
    store = InMemoryEntityStore()
    controller = make_controller(chain, store)
    controller.sync()
    controller.close()
    assert store.snapshot() == canonical_fork_snapshot()
