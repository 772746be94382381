import argparse
import logging

from src.application.payment_reconciler import PaymentReconciler
from src.infrastructure.db.session import get_db_session
from src.infrastructure.gateways.razorpay_gateway import RazorpayGateway
from src.infrastructure.settings import PAYMENT_ABANDON_AFTER_SECONDS


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Sweep payments stuck in 'created': settle those paid at the gateway, abandon the rest.",
    )
    parser.add_argument(
        "--older-than",
        type=int,
        default=PAYMENT_ABANDON_AFTER_SECONDS,
        help="Age in seconds after which a created payment counts as abandoned.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    with get_db_session() as db:
        count = PaymentReconciler(db, RazorpayGateway()).abandon_stale(args.older_than)

    print(f"Marked {count} payment(s) abandoned.")


if __name__ == "__main__":
    main()
