"""
cli.py: command-line front end for the review collection.

Usage:
    foodreview list
    foodreview add --restaurant "Cafe A" --food "Soup" --price 4.50 \
        --taste 8 --texture 7 --size 5 --value 6 --el Yes --ag No [--image photo.jpg]
    foodreview delete 3
    foodreview image images/1700000000000_photo.jpg --out photo.jpg

Commands that write ask for the passphrase (or read FOODREVIEW_PASSPHRASE).
"""

import argparse
import asyncio
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from .core.device import detect_device_class
from .errors import FoodReviewError
from .media.pipeline import ImagePipeline, SelectedFile
from .schemas import Review
from .services.controller import ReviewController
from .settings import settings
from .storage.github_contents import GitHubContentStore

logger = logging.getLogger("foodreview.cli")


class ConsolePresenter:
    def __init__(self, stream=None):
        self.stream = stream or sys.stdout
        self.errors: list[str] = []

    def render(self, reviews: list[Review], logged_in: bool) -> None:
        mode = "logged in" if logged_in else "read-only"
        print(f"{len(reviews)} review(s) [{mode}]", file=self.stream)
        for i, r in enumerate(reviews):
            flags = ", ".join(name for name, on in (("EL", r.binary_flags.EL), ("AG", r.binary_flags.AG)) if on)
            print(
                f"{i:>3}. {r.restaurant} - {r.food_item}  ${r.price:.2f}  "
                f"taste {r.ratings.taste} texture {r.ratings.texture} size {r.ratings.size} value {r.ratings.value}"
                f"{'  [' + flags + ']' if flags else ''}"
                f"{'  (photo)' if r.image else ''}",
                file=self.stream,
            )

    def report_error(self, message: str) -> None:
        self.errors.append(message)
        print(f"Error: {message}", file=sys.stderr)

    def report_progress(self, percent: int) -> None:
        logger.info(f"Progress: {percent}%")


def _passphrase(args) -> str:
    return args.passphrase or os.environ.get("FOODREVIEW_PASSPHRASE") or getpass.getpass("Password: ")


async def _run(args) -> int:
    presenter = ConsolePresenter()
    device = detect_device_class(override=args.device) if args.device else None
    async with GitHubContentStore() as store:
        controller = ReviewController(store, presenter, pipeline=ImagePipeline(device=device))

        if args.command == "list":
            await controller.refresh()
            return 1 if presenter.errors else 0

        if args.command == "image":
            result = await controller.load_image(args.reference)
            if not result.ok:
                presenter.report_error(f"Image unavailable: {result.reason}")
                return 1
            out = Path(args.out or Path(args.reference).name)
            out.write_bytes(result.data)
            print(f"Wrote {len(result.data)} bytes to {out}")
            return 0

        if not await controller.login(_passphrase(args)):
            return 1

        if args.command == "login":
            return 0

        if args.command == "add":
            if args.image:
                file = await SelectedFile.from_path(args.image)
                if await controller.select_image(file) is None:
                    return 1
            form = {
                "restaurant": args.restaurant,
                "foodItem": args.food,
                "price": args.price,
                "taste": args.taste,
                "texture": args.texture,
                "size": args.size,
                "value": args.value,
                "EL": args.el,
                "AG": args.ag,
            }
            review = await controller.add_review(form)
            return 0 if review is not None else 1

        if args.command == "delete":
            removed = await controller.delete_review(args.index)
            return 0 if removed is not None else 1

    return 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foodreview", description="Food reviews stored in a GitHub repository.")
    parser.add_argument("--passphrase", help="Password for the encrypted token (default: prompt)")
    parser.add_argument("--device", choices=["desktop", "mobile"], help="Force the image compression profile")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("list", help="Show all reviews")
    sub.add_parser("login", help="Check the password")

    add = sub.add_parser("add", help="Add a review")
    add.add_argument("--restaurant", required=True)
    add.add_argument("--food", required=True)
    add.add_argument("--price", required=True)
    for rating in ("taste", "texture", "size", "value"):
        add.add_argument(f"--{rating}", type=int, required=True, help="1-10")
    add.add_argument("--el", default="No", choices=["Yes", "No"])
    add.add_argument("--ag", default="No", choices=["Yes", "No"])
    add.add_argument("--image", help="Photo to attach")

    delete = sub.add_parser("delete", help="Delete a review by position")
    delete.add_argument("index", type=int)

    image = sub.add_parser("image", help="Download a review photo")
    image.add_argument("reference")
    image.add_argument("--out")
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else settings.log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[logging.StreamHandler(sys.stdout)]
    )
    try:
        return asyncio.run(_run(args))
    except FoodReviewError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
