"""Interactive terminal chat: ``python -m bizchat``."""

import argparse
import asyncio
import logging
from datetime import date, timedelta

from . import Assistant, backend, llm, store
from .config import get_settings
from .records import BusinessProfile, Customer, Expense, Invoice, Item

logger = logging.getLogger(__name__)

LLM_CHOICES = {
    "openai": lambda: llm.OpenAI(),
    "anthropic": lambda: llm.Anthropic(),
    "ollama": lambda: llm.Ollama(),
    "none": lambda: llm.NoLLM(),
}


def make_llm(name: str) -> llm.LLM:
    """Build the chosen provider, or NoLLM when its package is missing."""
    try:
        return LLM_CHOICES[name]()
    except ImportError:
        logger.warning(
            "The '%s' package is not installed; using the rule-based analyzer only. "
            'Install with: pip install "bizchat[%s]"',
            name,
            name,
        )
        return llm.NoLLM()


def seed_demo(data: backend.InMemory, user_id: str) -> None:
    """Load a small business with a few customers, items and records."""
    today = date.today()
    data.add_profile(user_id, BusinessProfile(name="Demo Studio", default_tax_rate=10.0))
    for name, email in [
        ("James Carter", "james@example.com"),
        ("Anna Smith", "anna@smith.example"),
        ("Bob Smith", "bob@smith.example"),
        ("Carla Smith", "carla@smith.example"),
    ]:
        data.add_customer(user_id, Customer(name=name, email=email))
    for name, price, unit in [
        ("Web Design", 1200.0, "project"),
        ("Consulting", 150.0, "hour"),
        ("Hosting", 25.0, "month"),
    ]:
        data.add_item(user_id, Item(name=name, sale_price=price, unit=unit))
    customer = data.add_customer(user_id, Customer(name="Dana White"))
    data.add_invoice(
        user_id,
        Invoice(
            invoice_number="INV-DEMO-001",
            customer_id=customer.id,
            customer_name=customer.name,
            issue_date=today,
            due_date=today + timedelta(days=30),
            subtotal=500.0,
            total=500.0,
            status="paid",
        ),
    )
    data.add_expense(user_id, Expense(description="Office supplies", amount=80.0, expense_date=today))


def print_reply(reply) -> None:
    print(f"\nassistant> {reply.content}")
    for action in reply.pending_actions:
        print(f"  [pending {action.type}] /confirm {action.id}  or  /reject {action.id}")
    if reply.suggested_actions:
        print("  suggestions: " + " | ".join(reply.suggested_actions))


async def chat(assistant: Assistant) -> None:
    session = await assistant.start_session()
    print(f"assistant> {session.messages[-1].content}")
    print('(type "/quit" to leave)')
    while True:
        try:
            text = await asyncio.to_thread(input, "\nyou> ")
        except EOFError:
            break
        text = text.strip()
        if not text:
            continue
        if text in ("/quit", "/exit"):
            break
        command, _, argument = text.partition(" ")
        if command == "/confirm":
            reply = await assistant.confirm_action(session.id, argument.strip())
        elif command == "/reject":
            reply = await assistant.reject_action(session.id, argument.strip())
        else:
            reply = await assistant.handle_message(text, session.id)
        if reply is None:
            print("\nassistant> That action is no longer pending.")
        else:
            print_reply(reply)
    await assistant.end_session(session.id)


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Chat with the bizchat invoicing assistant")
    parser.add_argument("--llm", choices=sorted(LLM_CHOICES), default="openai")
    parser.add_argument("--store", help="Directory for saved conversations (default: in memory)")
    parser.add_argument("--demo", action="store_true", help="Seed a demo business")
    args = parser.parse_args()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    data = backend.InMemory()
    assistant = Assistant(
        llm=make_llm(args.llm),
        store=store.File(args.store) if args.store else store.InMemory(),
        backend=data,
        settings=settings,
    )
    if args.demo:
        seed_demo(data, assistant.auth.get_current_user_id())
        logger.info("Seeded demo business")

    try:
        asyncio.run(chat(assistant))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
