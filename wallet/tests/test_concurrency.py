"""
Concurrency Tests

Approvals and debits racing on the same rows must not double-credit or
overdraw the wallet. Every race runs against both the in-memory store and a
SQLite-file SqlStorage, whose conditional UPDATEs are the guard there.
"""

import threading
from decimal import Decimal

from wallet.errors import InsufficientBalanceError, InvalidStateError
from wallet.models import BalanceRequestCreate, OtpGenerateRequest

WORKERS = 8


def run_concurrently(target, workers=WORKERS):
    barrier = threading.Barrier(workers)
    outcomes = []
    lock = threading.Lock()

    def worker():
        barrier.wait()
        try:
            result = target()
        except Exception as e:
            result = e
        with lock:
            outcomes.append(result)

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return outcomes


class TestConcurrentApproval:
    def test_simultaneous_approvals_credit_once(self, service, admin, user):
        request = service.submit_balance_request(
            user.id, BalanceRequestCreate(amount=Decimal("100"), utr_number="UTR123")
        )

        outcomes = run_concurrently(lambda: service.approve_balance_request(request.id, admin))

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(successes) == 1
        assert len(failures) == WORKERS - 1
        assert all(isinstance(f, InvalidStateError) for f in failures)

        assert service.get_user(user.id).balance == Decimal("100")
        assert len(service.list_transactions(user.id)) == 1


class TestConcurrentDebits:
    def test_parallel_otps_never_overdraw(self, service, admin, user):
        """Only as many OTPs succeed as the balance can pay for."""
        request = service.submit_balance_request(
            user.id, BalanceRequestCreate(amount=Decimal("3"), utr_number="UTR123")
        )
        service.approve_balance_request(request.id, admin)

        outcomes = run_concurrently(lambda: service.generate_otp(user.id, OtpGenerateRequest()))

        successes = [o for o in outcomes if not isinstance(o, Exception)]
        failures = [o for o in outcomes if isinstance(o, Exception)]
        assert len(successes) == 3
        assert all(isinstance(f, InsufficientBalanceError) for f in failures)

        assert service.get_user(user.id).balance == Decimal("0")
        assert len(service.list_otp_history(user.id)) == 3
        assert service.ledger_total(user.id) == Decimal("0")
