import argparse
import sys

import ankipkg
from ankipkg import config as ankipkg_config
from ankipkg import logger as ankipkg_logging
from ankipkg.container import PackageVersion
from ankipkg.exceptions import PackageError
from ankipkg.ids import reset_ids
from ankipkg.package import read_package, write_package
from ankipkg.render import card_kind_label, render_card

logger = ankipkg_logging.get_logger("ankipkg")

_VERSION_CHOICES = {
    "latest": PackageVersion.LATEST,
    "legacy2": PackageVersion.LEGACY_2,
    "legacy1": PackageVersion.LEGACY_1,
}


def _read(path):
    with open(path, "rb") as f:
        return read_package(f.read())


def _write(path, data):
    with open(path, "wb") as f:
        f.write(data)
    logger.info(f"Wrote {path} ({len(data)} bytes)")


def _print_tree(nodes, counts, depth=0):
    for node in nodes:
        print(f"{'  ' * depth}{node.deck.short_name} [{node.deck.id}] "
              f"({counts.get(node.deck.id, 0)} cards)")
        _print_tree(node.children, counts, depth + 1)


def cmd_info(args, conf):
    col = _read(args.package)
    print(f"version: {col.source_version.name}")
    print(f"schema:  V{col.schema_version}")
    for key, value in col.summary().items():
        print(f"{key + ':':8} {value}")
    _print_tree(col.deck_tree, col.deck_card_counts(include_subdecks=True))


def cmd_convert(args, conf):
    col = _read(args.package)
    version = _VERSION_CHOICES[args.version] if args.version else None
    _write(args.output, write_package(col, version=version, conf=conf))


def cmd_export_deck(args, conf):
    col = _read(args.package)
    deck = col.get_deck_by_name(args.deck)
    if deck is None:
        logger.error(f"No deck named {args.deck!r}")
        return 1
    deck_ids = {deck.id} if args.no_subdecks else col.subtree_ids(deck.id)
    version = _VERSION_CHOICES[args.version] if args.version else None
    _write(args.output, write_package(col, deck_ids=deck_ids, version=version, conf=conf))
    return 0


def cmd_render(args, conf):
    col = _read(args.package)
    card = col.get_card(args.card)
    if card is None:
        logger.error(f"No card with id {args.card}")
        return 1
    rendered = render_card(col, card)
    print(f"# {rendered.deck_name} / {rendered.model_name} ({card_kind_label(rendered.kind)})")
    print("## Front")
    print(rendered.front)
    print("## Back")
    print(rendered.back)
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="ankipkg", description="Inspect and rewrite .apkg packages")
    parser.add_argument("--config", help="extra config file")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("info", help="summarize a package")
    p.add_argument("package")
    p.set_defaults(func=cmd_info)

    p = sub.add_parser("convert", help="re-emit a package, optionally as another version")
    p.add_argument("package")
    p.add_argument("output")
    p.add_argument("--version", choices=sorted(_VERSION_CHOICES))
    p.set_defaults(func=cmd_convert)

    p = sub.add_parser("export-deck", help="export one deck and its subdecks")
    p.add_argument("package")
    p.add_argument("output")
    p.add_argument("--deck", required=True, help="full deck name, e.g. Parent::Child")
    p.add_argument("--no-subdecks", action="store_true")
    p.add_argument("--version", choices=sorted(_VERSION_CHOICES))
    p.set_defaults(func=cmd_export_deck)

    p = sub.add_parser("render", help="render one card")
    p.add_argument("package")
    p.add_argument("--card", type=int, required=True)
    p.set_defaults(func=cmd_render)

    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    conf = ankipkg_config.load_from_file(args.config)
    ankipkg_config.load_from_env(conf)
    logger.setLevel(conf.get("log_level", "INFO").upper())
    logger.debug(f"ankipkg {ankipkg._get_version()}")

    seed = ankipkg_config.get_int(conf, "id_seed", 0)
    if seed:
        reset_ids(seed)

    try:
        return args.func(args, conf) or 0
    except (PackageError, OSError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
