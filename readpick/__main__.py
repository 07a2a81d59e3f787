from __future__ import annotations

import argparse
import logging
import sys
from collections.abc import Callable
from typing import Any

from rich.console import Console
from rich.markup import escape

from .context import ReadPickContext
from .exceptions import map_exception_to_exit_code
from .features import AdminReviewQueue, ChatConversation, CollectionShelf, CommunityFeed, ReviewFeed
from .structures import EditStatus, LoadState, PageStoreState
from .tokengate import CredentialStore, TokenGate
from .ui import ErrorSurface, NullSink, RichSink

WAIT_TIMEOUT = 60.0


def _paging(p: argparse.ArgumentParser) -> argparse.ArgumentParser:
    p.add_argument("--page-size", type=int, default=20)
    p.add_argument("--pages", type=int, default=1, help="Number of pages to load")
    return p


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="readpick")
    parser.add_argument("--base-url", default=ReadPickContext.DEFAULT_BASE_URL)
    parser.add_argument("--credentials", help="Credential file (default ~/.config/readpick/credentials.json)")
    parser.add_argument("--token", help="Bearer token for this run only; not persisted")
    parser.add_argument("-v", "--verbose", action="store_true")

    sub = parser.add_subparsers(dest="command", required=True)

    login = sub.add_parser("login", help="Exchange a provider id token for a ReadPick token")
    login.add_argument("provider", choices=("google", "kakao", "naver"))
    login.add_argument("id_token")

    sub.add_parser("logout")
    sub.add_parser("whoami")

    reviews = _paging(sub.add_parser("reviews", help="List reviews of a book"))
    reviews.add_argument("isbn13")

    posts = _paging(sub.add_parser("posts", help="List community posts"))
    posts.add_argument("--category", type=int, dest="category_id")
    posts.add_argument("--sort", default="latest")

    sub.add_parser("collections", help="List your collections")
    _paging(sub.add_parser("reported", help="List reported reviews (admin)"))

    chat = sub.add_parser("chat", help="Send messages to the book chatbot in a new chat")
    chat.add_argument("messages", nargs="+")

    args = parser.parse_args(argv)

    if getattr(args, "page_size", 1) <= 0:
        parser.error("--page-size must be > 0")
    if getattr(args, "pages", 1) <= 0:
        parser.error("--pages must be > 0")
    if args.command == "reviews" and not args.isbn13.strip():
        parser.error("isbn13 must not be empty")

    return args


def _drain(feature: Any, pages: int) -> PageStoreState:
    state = feature.load().result(timeout=WAIT_TIMEOUT)
    for _ in range(pages - 1):
        if state.load_state == LoadState.ERROR or state.is_last:
            break
        state = feature.load_more().result(timeout=WAIT_TIMEOUT)
    return state


def _print_list(console: Console, state: PageStoreState, render: Callable[[Any], str]) -> int:
    for item in state.items:
        console.print(render(item))
    if state.load_state == LoadState.ERROR:
        return 1
    more = "" if state.is_last else " (more available)"
    console.print(f"[dim]{len(state.items)} of {state.total_count}{more}[/dim]")
    return 0


def _run_command(args: argparse.Namespace, context: ReadPickContext, surface: ErrorSurface, console: Console) -> int:
    cmd = args.command
    gate = context.gate

    if cmd == "login":
        _, identity = context.login(args.provider, args.id_token)
        console.print(f"signed in as {escape(identity.name or str(identity.user_id))} ({identity.role})")
        return 0
    if cmd == "logout":
        context.logout()
        console.print("signed out")
        return 0
    if cmd == "whoami":
        if not gate.is_authenticated():
            console.print("not signed in")
            return 1
        ident = gate.identity()
        if ident is None:
            console.print("signed in")
        else:
            console.print(escape(f"{ident.name or '?'} id={ident.user_id} role={ident.role}"))
        return 0

    if cmd == "reviews":
        feature = ReviewFeed(context, args.isbn13.strip(), surface=surface, page_size=args.page_size)
        render = lambda r: escape(f"[{r.id}] {r.author_name}: {r.content}")  # noqa: E731
    elif cmd == "posts":
        feature = CommunityFeed(context, category_id=args.category_id, sort=args.sort,
                                surface=surface, page_size=args.page_size)
        render = lambda p: escape(f"[{p.id}] {p.title} ({p.author_name}, {p.like_count} likes)")  # noqa: E731
    elif cmd == "collections":
        feature = CollectionShelf(context, surface=surface)
        render = lambda c: escape(f"[{c.id}] {c.name} ({c.book_count} books)")  # noqa: E731
    elif cmd == "reported":
        feature = AdminReviewQueue(context, surface=surface, page_size=args.page_size)
        render = lambda r: escape(f"[{r.id}] {r.author_name}: {r.content} x{r.report_count}")  # noqa: E731
    elif cmd == "chat":
        return _chat(args.messages, context, surface, console)
    else:
        raise ValueError(f"unknown command: {cmd}")

    try:
        state = _drain(feature, getattr(args, "pages", 1))
        return _print_list(console, state, render)
    finally:
        feature.close()


def _chat(messages: list[str], context: ReadPickContext, surface: ErrorSurface, console: Console) -> int:
    conversation = ChatConversation(context, surface=surface)
    try:
        for text in messages:
            edit = conversation.send_message(text).result(timeout=WAIT_TIMEOUT)
            if edit.status != EditStatus.CONFIRMED:
                return 1
            reply = conversation.store.items[-1]
            console.print(f"[bold]bot[/bold] {escape(reply.content)}")
            for book in reply.books:
                console.print(f"  [dim]{escape(book.isbn13)}[/dim] {escape(book.title)}")
        return 0
    finally:
        conversation.close()


def main(argv: list[str] | None = None) -> int:
    context: ReadPickContext | None = None
    sink: NullSink | RichSink | None = None

    try:
        args = parse_args(argv)

        console = Console()
        err_console = Console(stderr=True)
        level = logging.DEBUG if args.verbose else logging.WARNING
        if sys.stderr.isatty():
            from rich.logging import RichHandler

            sink = RichSink(err_console)
            logging.basicConfig(
                handlers=[RichHandler(console=err_console, show_path=False)],
                level=level,
                format="%(message)s",
            )
        else:
            sink = NullSink()
            logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")

        store = None if args.token else CredentialStore(args.credentials)
        gate = TokenGate(store)
        gate.hydrate()
        if args.token:
            gate.set_credential(args.token, None)

        context = ReadPickContext(base_url=args.base_url, gate=gate)
        surface = ErrorSurface(sink)
        return _run_command(args, context, surface, console)

    except KeyboardInterrupt:
        return 5
    except SystemExit as exc:
        code = exc.code if isinstance(exc.code, int) else 2
        return 0 if code == 0 else 2
    except BaseException as exc:
        logging.getLogger(__name__).debug("command failed", exc_info=True)
        if sink is not None and not isinstance(sink, NullSink):
            ErrorSurface(sink).report(exc)
        else:
            print(f"error: {exc}", file=sys.stderr)
        return map_exception_to_exit_code(exc)
    finally:
        if context is not None:
            context.close()
        if sink is not None:
            sink.close()


if __name__ == "__main__":
    sys.exit(main())
