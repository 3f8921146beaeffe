"""
Test helper functions and factory methods for the Exam Access Layer.
"""

from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta, timezone


class FixedClock:
    """Manually advanced clock for deterministic expiry tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class DataFactory:
    """Factory for creating test data."""

    @staticmethod
    def create_exams() -> List[Dict[str, Any]]:
        """Two RM papers and one RN paper with short answer keys."""
        return [
            {
                "exam_id": "rm-paper-1",
                "exam_category": "RM",
                "title": "RM Practice Exam - Paper 1",
                "paper": 1,
                "duration_minutes": 30,
                "answer_key": ["A", "B", "C", "D", "A"],
            },
            {
                "exam_id": "rm-paper-2",
                "exam_category": "RM",
                "title": "RM Practice Exam - Paper 2",
                "paper": 2,
                "duration_minutes": 30,
                "answer_key": ["B", "B", "C", "A"],
            },
            {
                "exam_id": "rn-paper-1",
                "exam_category": "RN",
                "title": "RN Practice Exam - Paper 1",
                "paper": 1,
                "duration_minutes": 60,
                "answer_key": ["C", "A", "D"],
            },
        ]

    @staticmethod
    def paystack_payload(reference: str = "t1",
                         user_id: str = "u1",
                         amount_kobo: int = 200000,
                         exam_category: str = "RM",
                         event: str = "charge.success") -> Dict[str, Any]:
        return {
            "event": event,
            "data": {
                "reference": reference,
                "amount": amount_kobo,
                "currency": "NGN",
                "status": "success" if event == "charge.success" else "failed",
                "customer": {"email": f"{user_id}@example.com"},
                "metadata": {"userId": user_id, "examCategory": exam_category},
            },
        }

    @staticmethod
    def flutterwave_payload(tx_ref: str = "flw-t1",
                            transaction_id: int = 4421,
                            user_id: str = "u1",
                            amount: float = 2000,
                            status: str = "successful") -> Dict[str, Any]:
        return {
            "event": "charge.completed",
            "data": {
                "id": transaction_id,
                "tx_ref": tx_ref,
                "amount": amount,
                "currency": "NGN",
                "status": status,
                "customer": {"email": f"{user_id}@example.com"},
            },
            "meta_data": {"userId": user_id, "examCategory": "RM"},
        }

    @staticmethod
    def stripe_payload(session_id: str = "cs_test_1",
                       user_id: str = "u1",
                       amount_total: int = 2000,
                       payment_status: str = "paid") -> Dict[str, Any]:
        return {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": session_id,
                    "amount_total": amount_total,
                    "currency": "usd",
                    "payment_status": payment_status,
                    "payment_intent": "pi_123",
                    "customer_details": {"email": f"{user_id}@example.com"},
                    "metadata": {"userId": user_id, "examCategory": "RM", "validityDays": "30"},
                }
            },
        }

    @staticmethod
    def paystack_verification(reference: str = "t1",
                              user_id: str = "u1",
                              status: str = "success") -> Dict[str, Any]:
        """Body of a Paystack ``transaction/verify`` reply."""
        return {
            "status": True,
            "message": "Verification successful",
            "data": {**DataFactory.paystack_payload(reference, user_id)["data"], "status": status},
        }

    @staticmethod
    def flutterwave_verification(tx_ref: str = "flw-t1",
                                 transaction_id: int = 4421,
                                 user_id: str = "u1",
                                 status: str = "successful") -> Dict[str, Any]:
        """Body of a Flutterwave ``transactions/{id}/verify`` reply."""
        data = DataFactory.flutterwave_payload(tx_ref, transaction_id, user_id, status=status)["data"]
        data["meta"] = {"userId": user_id, "examCategory": "RM"}
        return {"status": "success", "message": "Transaction fetched successfully", "data": data}
