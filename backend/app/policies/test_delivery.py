import unittest

from app.core.errors import InvalidTransition
from app.models.message import DeliveryStatus
from app.policies.delivery import advance


class TestDeliveryStatus(unittest.TestCase):

    def test_forward_moves(self):
        self.assertEqual(advance(DeliveryStatus.SENDING, DeliveryStatus.SENT), DeliveryStatus.SENT)
        self.assertEqual(
            advance(DeliveryStatus.SENT, DeliveryStatus.DELIVERED), DeliveryStatus.DELIVERED
        )
        self.assertEqual(advance(DeliveryStatus.DELIVERED, DeliveryStatus.READ), DeliveryStatus.READ)
        self.assertEqual(advance(DeliveryStatus.SENT, DeliveryStatus.READ), DeliveryStatus.READ)

    def test_same_state_is_noop(self):
        self.assertEqual(advance(DeliveryStatus.READ, DeliveryStatus.READ), DeliveryStatus.READ)

    def test_backwards_rejected(self):
        with self.assertRaises(InvalidTransition):
            advance(DeliveryStatus.READ, DeliveryStatus.DELIVERED)
        with self.assertRaises(InvalidTransition):
            advance(DeliveryStatus.FAILED, DeliveryStatus.SENT)


if __name__ == "__main__":
    unittest.main()
