"""Convert a DeepSeek chat export into standalone HTML pages with a sorted index."""

import json
import html
import re
import traceback
import webbrowser
from datetime import datetime, timezone
from functools import cmp_to_key
from pathlib import Path

import click
from bs4 import BeautifulSoup
from click_default_group import DefaultGroup
from jinja2 import Environment, PackageLoader

# Set up Jinja2 environment
_jinja_env = Environment(
    loader=PackageLoader("deepseek_formatter", "templates"),
    autoescape=True,
)

# Load macros template and expose macros
_macros_template = _jinja_env.get_template("macros.html")
_macros = _macros_template.module


def get_template(name):
    """Get a Jinja2 template by name."""
    return _jinja_env.get_template(name)


CODE_BLOCK_PATTERN = re.compile(r"```(\w+)?\n(.*?)```", re.DOTALL)
INLINE_CODE_PATTERN = re.compile(r"`([^`]+)`")
H4_PATTERN = re.compile(r"^### (.+)$", re.MULTILINE)
H3_PATTERN = re.compile(r"^## (.+)$", re.MULTILINE)
H2_PATTERN = re.compile(r"^# (.+)$", re.MULTILINE)
BOLD_PATTERN = re.compile(r"\*\*([^*]+)\*\*")
ITALIC_PATTERN = re.compile(r"\*([^*]+)\*")
LIST_ITEM_PATTERN = re.compile(r"^- (.+)$", re.MULTILINE)
LIST_RUN_PATTERN = re.compile(r"(<li>.*</li>\n?)+")
LINK_PATTERN = re.compile(r"\[([^\]]+)\]\(([^)]+)\)")

# Characters that are not allowed in filenames on common filesystems
UNSAFE_FILENAME_PATTERN = re.compile(r'[<>:"/\\|?*]')
MAX_SLUG_LENGTH = 50

REQUEST_TYPE = "REQUEST"
SORTING_DESCRIPTION = "by date descending (most recent first)"

DOM_MESSAGE_SELECTORS = [
    '[data-testid*="message"]',
    '[class*="message"]',
    '[class*="Message"]',
    ".message",
    ".chat-message",
    ".conversation-item",
    ".msg",
    'div[class*="group"]',
]
USER_PREFIXES = ("I ", "get me", "is this")
AI_MARKERS = ("Excellent", "Key Points", "Example:", "✅")


CSS = """
:root { --accent: #ff4444; --request-bg: #fff5f5; --response-bg: #f0fff4; --response-border: #28a745; --text-muted: #666; --code-bg: #1e1e1e; --code-text: #d4d4d4; }
body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; line-height: 1.6; margin: 0; padding: 20px; background-color: #f5f5f5; }
.container { max-width: 800px; margin: 0 auto; background: white; padding: 30px; border-radius: 10px; box-shadow: 0 2px 15px rgba(0,0,0,0.1); }
.header { border-bottom: 3px solid var(--accent); padding-bottom: 15px; margin-bottom: 30px; }
.conversation-meta { display: flex; justify-content: space-between; align-items: center; margin-bottom: 10px; font-size: 14px; }
.conversation-number { background: var(--accent); color: white; padding: 4px 10px; border-radius: 4px; font-weight: bold; }
.conversation-date { color: var(--text-muted); font-style: italic; }
.title { color: var(--accent); font-size: 24px; margin: 0 0 10px 0; border-left: 4px solid var(--accent); padding-left: 15px; }
.meta { color: var(--text-muted); font-size: 14px; line-height: 1.5; background: #f8f9fa; padding: 10px 15px; border-radius: 6px; margin-top: 10px; }
.chat-message { margin-bottom: 25px; padding: 15px; border-radius: 8px; border-left: 4px solid; }
.request { background-color: var(--request-bg); border-left-color: var(--accent); }
.response { background-color: var(--response-bg); border-left-color: var(--response-border); }
.message-header { font-weight: bold; margin-bottom: 10px; display: flex; justify-content: space-between; align-items: center; }
.message-header h2 { color: var(--accent); margin: 0; font-size: 20px; }
.message-time { font-size: 12px; color: #888; font-weight: normal; }
.message-content { word-wrap: break-word; font-size: 15px; line-height: 1.5; }
pre { background-color: var(--code-bg); color: var(--code-text); padding: 15px; border-radius: 5px; overflow-x: auto; font-family: 'Courier New', monospace; }
code { background-color: #f8f9fa; padding: 2px 5px; border-radius: 3px; font-family: 'Courier New', monospace; }
pre code { background: none; padding: 0; }
.footer { margin-top: 30px; padding-top: 20px; border-top: 1px solid #ddd; text-align: center; color: var(--text-muted); font-size: 14px; }
.nav-info { font-size: 12px; color: #888; font-style: italic; }
a { color: var(--accent); text-decoration: none; }
a:hover { text-decoration: underline; }
@media (max-width: 600px) { body { padding: 8px; } .container { padding: 16px; } pre { font-size: 0.8rem; padding: 8px; } }
"""

INDEX_CSS = """
body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; margin: 0; padding: 20px; background: #f5f7fa; }
.container { max-width: 1200px; margin: 0 auto; background: white; border-radius: 12px; padding: 30px; box-shadow: 0 4px 20px rgba(0,0,0,0.08); }
.header { text-align: center; margin-bottom: 30px; padding-bottom: 20px; border-bottom: 3px solid #ff4444; }
h1 { color: #ff4444; margin: 0 0 10px 0; }
.subtitle { color: #666; font-size: 16px; }
.conversations-table { width: 100%; border-collapse: collapse; }
.conversations-table th { background: #f8f9fa; padding: 12px 15px; text-align: left; color: #333; font-weight: 600; border-bottom: 2px solid #ddd; }
.conversations-table td { padding: 12px 15px; border-bottom: 1px solid #eee; }
.conversations-table tr:hover { background: #f9f9f9; }
.number { text-align: center; font-weight: bold; color: #ff4444; }
.date { color: #666; font-size: 14px; }
.title a { color: #333; text-decoration: none; font-weight: 500; font-size: 16px; }
.title a:hover { color: #ff4444; }
.conversation-id { color: #888; font-size: 12px; font-family: monospace; margin-top: 5px; }
.messages, .file-link { text-align: center; }
.view-btn { display: inline-block; background: #ff4444; color: white; padding: 6px 12px; border-radius: 4px; text-decoration: none; font-size: 14px; }
.view-btn:hover { background: #e03e3e; }
.footer { margin-top: 30px; padding-top: 20px; border-top: 1px solid #ddd; text-align: center; color: #666; font-size: 14px; }
.legend { display: flex; justify-content: center; gap: 20px; margin-top: 20px; }
.legend-item { display: flex; align-items: center; gap: 8px; }
.legend-color { width: 16px; height: 16px; border-radius: 3px; }
.legend-color.request { background: #ff4444; }
.legend-color.response { background: #28a745; }
"""


class FormatterError(Exception):
    """Raised when the input cannot be converted at all."""

    pass


class MappingCycleError(FormatterError):
    """Raised when a conversation's node chain loops back on itself."""

    pass


def warn(message):
    click.secho(f"Warning: {message}", fg="yellow", err=True)


def safe_string(value):
    if value is None or value == "":
        return ""
    return str(value)


def _field(conversation, key):
    if not isinstance(conversation, dict):
        return None
    return conversation.get(key)


def conversation_date(conversation):
    """Return the date used for sorting and naming: updated_at, else inserted_at."""
    return _field(conversation, "updated_at") or _field(conversation, "inserted_at")


def parse_timestamp(value):
    """Parse an ISO 8601 string (or Unix seconds) into a datetime.

    Raises ValueError or TypeError when the value is not a timestamp.
    """
    if isinstance(value, bool):
        raise TypeError(f"Not a timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.fromisoformat(value)


def format_timestamp(value):
    if not value:
        return "unknown"
    try:
        return parse_timestamp(value).strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, TypeError, OverflowError, OSError):
        return str(value)


def date_prefix(conversation):
    """Return the YYYY-MM-DD filename prefix for a conversation, or "nodate"."""
    value = conversation_date(conversation)
    if not value:
        return "nodate"
    try:
        return parse_timestamp(value).strftime("%Y-%m-%d")
    except (ValueError, TypeError, OverflowError, OSError):
        return "nodate"


def sanitize_filename(name):
    if not name or not isinstance(name, str):
        return "untitled"
    name = UNSAFE_FILENAME_PATTERN.sub("_", name)
    name = re.sub(r"\s+", "_", name)
    return name[:MAX_SLUG_LENGTH].strip()


def conversation_filename(conversation, number):
    """Build the {date}-{NNN}-{slug}.html filename for the 1-based position number."""
    file_number = f"{number:03d}"
    title = _field(conversation, "title") or f"conversation-{file_number}"
    return f"{date_prefix(conversation)}-{file_number}-{sanitize_filename(title)}.html"


def render_text(raw):
    """Turn message text into an HTML fragment.

    The text is escaped first and a fixed chain of markdown-like
    substitutions is applied afterwards, so each pass sees the output of
    the previous one: code blocks, inline code, headings, bold/italic,
    lists, links and finally line breaks.
    """
    if not raw or not isinstance(raw, str):
        return ""
    text = html.escape(raw)
    text = CODE_BLOCK_PATTERN.sub(
        lambda m: f"<pre><code>{m.group(2).strip()}</code></pre>", text
    )
    text = INLINE_CODE_PATTERN.sub(r"<code>\1</code>", text)
    text = H4_PATTERN.sub(r"<h4>\1</h4>", text)
    text = H3_PATTERN.sub(r"<h3>\1</h3>", text)
    text = H2_PATTERN.sub(r"<h2>\1</h2>", text)
    text = BOLD_PATTERN.sub(r"<strong>\1</strong>", text)
    text = ITALIC_PATTERN.sub(r"<em>\1</em>", text)
    text = LIST_ITEM_PATTERN.sub(r"<li>\1</li>", text)
    text = LIST_RUN_PATTERN.sub(lambda m: f"<ul>{m.group(0)}</ul>", text)
    text = LINK_PATTERN.sub(r'<a href="\2" target="_blank">\1</a>', text)
    return text.replace("\n", "<br>")


def _walk_mapping(mapping):
    root = mapping.get("root") or {}
    children = root.get("children") or []
    current_id = children[0] if children else None

    messages = []
    steps = 0
    while current_id is not None and current_id in mapping:
        node = mapping[current_id]
        if not node:
            break
        steps += 1
        if steps > len(mapping):
            raise MappingCycleError(f"Node chain revisits {current_id!r}")
        if node.get("message"):
            messages.append(node["message"])
        children = node.get("children") or []
        current_id = children[0] if children else None
    return messages


def extract_messages(mapping):
    """Collect the messages along the first-child chain of a conversation mapping.

    Starts at mapping["root"]["children"][0] and follows each node's first
    child until a node has no children or the next id is not in the mapping.
    Returns an empty list for a missing or malformed mapping.
    """
    if not isinstance(mapping, dict):
        warn("Invalid or missing mapping object")
        return []
    try:
        return _walk_mapping(mapping)
    except (MappingCycleError, AttributeError, TypeError, IndexError, KeyError) as e:
        warn(f"Error extracting messages: {e}")
        return []


def iter_fragment_blocks(messages):
    """Yield (role_class, label, timestamp, content) for every renderable fragment.

    Request fragments advance a shared turn counter, so a response is
    numbered like the request before it.
    """
    turn = 0
    for message in messages:
        if not isinstance(message, dict):
            continue
        fragments = message.get("fragments")
        if not isinstance(fragments, list):
            continue
        for fragment in fragments:
            if not isinstance(fragment, dict):
                continue
            if not (fragment.get("type") and fragment.get("content")):
                continue
            is_request = fragment["type"] == REQUEST_TYPE
            if is_request:
                turn += 1
            number = max(turn, 1)
            if is_request:
                role_class, label = "request", f"Request {number}"
            else:
                role_class, label = "response", f"Response {number}"
            timestamp = message.get("inserted_at") or "unknown"
            yield role_class, label, timestamp, safe_string(fragment["content"])


def render_message_block(role_class, label, timestamp, content):
    content_html = render_text(content)
    return _macros.message(
        role_class, label, format_timestamp(timestamp), content_html
    )


def render_error_page(message):
    return get_template("error.html").render(message=message)


def _render_conversation_page(conversation, number, messages):
    file_number = f"{number:03d}"
    title = safe_string(conversation.get("title")) or f"Conversation {file_number}"
    conversation_id = safe_string(conversation.get("id")) or "unknown-id"
    created = format_timestamp(conversation.get("inserted_at"))
    updated = format_timestamp(conversation.get("updated_at"))

    blocks_html = "".join(
        render_message_block(*block) for block in iter_fragment_blocks(messages)
    )
    return get_template("conversation.html").render(
        css=CSS,
        title=title,
        file_number=file_number,
        conversation_id=conversation_id,
        created=created,
        updated=updated,
        messages_html=blocks_html,
        total_messages=len(messages),
        generated=datetime.now().strftime("%Y-%m-%d"),
    )


def report_failure_details(conversation):
    """Dump the current traceback and the offending conversation to stderr."""
    click.echo(traceback.format_exc(), err=True)
    click.secho("Conversation data:", fg="yellow", err=True)
    click.echo(
        json.dumps(conversation, indent=2, ensure_ascii=False, default=str),
        err=True,
    )


def render_conversation(conversation, number, messages=None, stats=None, verbose=False):
    """Render one conversation as a complete HTML document.

    number is the conversation's 1-based position in the sorted collection.
    If messages is None they are extracted from the conversation's mapping.
    Rendering failures never propagate: an error page carrying the
    exception message is returned and stats["errors"] is incremented.
    """
    try:
        if messages is None:
            messages = extract_messages(conversation.get("mapping"))
        return _render_conversation_page(conversation, number, messages)
    except Exception as e:
        click.secho(
            f"Error generating HTML for conversation {number:03d}: {e}",
            fg="red",
            err=True,
        )
        if verbose:
            report_failure_details(conversation)
        if stats is not None:
            stats["errors"] += 1
        return render_error_page(str(e))


def compare_conversations(a, b):
    """Order conversations newest first; undated ones go last."""
    try:
        date_a = conversation_date(a)
        date_b = conversation_date(b)
        if not date_a and not date_b:
            return 0
        if not date_a:
            return 1
        if not date_b:
            return -1
        time_a = parse_timestamp(date_a).timestamp()
        time_b = parse_timestamp(date_b).timestamp()
        return (time_b > time_a) - (time_b < time_a)
    except Exception:
        return 0


def sort_conversations(conversations):
    try:
        return sorted(conversations, key=cmp_to_key(compare_conversations))
    except Exception as e:
        warn(f"Error sorting conversations: {e}")
        return list(conversations)


def new_stats():
    return {
        "total_conversations": 0,
        "total_messages": 0,
        "processed_files": 0,
        "errors": 0,
    }


def load_conversations(input_path):
    """Load and validate the export file.

    Raises FormatterError if the file is missing, is not valid JSON, or
    does not hold a list of conversations.
    """
    input_path = Path(input_path)
    if not input_path.exists():
        raise FormatterError(f"Input file not found: {input_path}")
    try:
        with open(input_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise FormatterError(f"Invalid JSON in {input_path}: {e}") from e
    except OSError as e:
        raise FormatterError(f"Cannot read {input_path}: {e}") from e
    if not isinstance(data, list):
        raise FormatterError(
            "Invalid JSON format: Expected an array of conversations"
        )
    return data


def build_entry(conversation, number, message_count):
    """Describe one conversation for summary.json and index.html."""
    date = conversation_date(conversation)
    return {
        "number": number,
        "id": safe_string(_field(conversation, "id")),
        "title": safe_string(_field(conversation, "title")),
        "date": safe_string(date),
        "formattedDate": format_timestamp(date),
        "file": conversation_filename(conversation, number),
        "created": safe_string(_field(conversation, "inserted_at")),
        "updated": safe_string(_field(conversation, "updated_at")),
        "messageCount": message_count,
    }


def process_conversation(conversation, number, output_dir, stats, verbose=False):
    """Render and write one conversation, returning its summary entry.

    Failures are reported and counted in stats; they never propagate.
    """
    messages = []
    try:
        messages = extract_messages(_field(conversation, "mapping"))
        stats["total_messages"] += len(messages)
        filename = conversation_filename(conversation, number)

        if verbose:
            click.secho(
                f"Processing {number:03d}/{stats['total_conversations']}: "
                f"{_field(conversation, 'title') or 'Untitled'} "
                f"({format_timestamp(conversation_date(conversation))})",
                fg="blue",
            )

        page_html = render_conversation(
            conversation, number, messages, stats=stats, verbose=verbose
        )
        (output_dir / filename).write_text(page_html, encoding="utf-8")
        stats["processed_files"] += 1

        if not verbose:
            click.secho(".", fg="bright_black", nl=False)
    except Exception as e:
        stats["errors"] += 1
        click.secho(
            f"\nError processing conversation {number}: {e}", fg="red", err=True
        )
        if verbose:
            report_failure_details(conversation)
    return build_entry(conversation, number, len(messages))


def build_summary(entries, stats):
    return {
        "generated": datetime.now(timezone.utc)
        .isoformat(timespec="milliseconds")
        .replace("+00:00", "Z"),
        "totalConversations": len(entries),
        "totalMessages": stats["total_messages"],
        "processedFiles": stats["processed_files"],
        "errors": stats["errors"],
        "sorting": SORTING_DESCRIPTION,
        "conversations": entries,
    }


def render_index(entries, stats):
    rows_html = "".join(
        _macros.index_row(
            entry["number"],
            entry["formattedDate"],
            entry["title"] or f"Conversation {entry['number']}",
            entry["id"],
            entry["messageCount"],
            entry["file"],
        )
        for entry in entries
    )
    return get_template("index.html").render(
        css=INDEX_CSS,
        total_conversations=len(entries),
        total_messages=stats["total_messages"],
        rows_html=rows_html,
        generated=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
    )


def write_summary(entries, stats, output_dir):
    """Write summary.json and index.html; each failure is only a warning."""
    written = []
    try:
        summary = build_summary(entries, stats)
        (output_dir / "summary.json").write_text(
            json.dumps(summary, indent=2, ensure_ascii=False), encoding="utf-8"
        )
        written.append("summary.json")
    except Exception as e:
        warn(f"Error generating summary: {e}")

    try:
        (output_dir / "index.html").write_text(
            render_index(entries, stats), encoding="utf-8"
        )
        written.append("index.html")
    except Exception as e:
        warn(f"Error generating index.html: {e}")

    if written:
        click.secho(f"Generated {' and '.join(written)}", fg="green")


def print_stats(stats):
    click.echo()
    click.secho("Statistics:", fg="cyan")
    click.secho(
        f"   Conversations: {stats['total_conversations']} (sorted by date)",
        fg="bright_black",
    )
    click.secho(f"   Total messages: {stats['total_messages']}", fg="bright_black")
    click.secho(f"   Files created: {stats['processed_files']}", fg="bright_black")
    if stats["errors"]:
        click.secho(f"   Errors: {stats['errors']}", fg="yellow")


def generate_html(input_path, output_dir, verbose=False):
    """Convert every conversation in input_path into HTML files under output_dir.

    Returns the run statistics. Raises FormatterError for unusable input.
    """
    output_dir = Path(output_dir)
    click.secho(f"Input: {input_path}", fg="bright_black")
    click.secho(f"Output: {output_dir}", fg="bright_black")

    conversations = sort_conversations(load_conversations(input_path))

    stats = new_stats()
    stats["total_conversations"] = len(conversations)
    click.secho(f"Found {stats['total_conversations']} conversations", fg="cyan")

    output_dir.mkdir(parents=True, exist_ok=True)

    entries = [
        process_conversation(conversation, number, output_dir, stats, verbose)
        for number, conversation in enumerate(conversations, start=1)
    ]
    if not verbose and entries:
        click.echo()

    write_summary(entries, stats, output_dir)
    return stats


def classify_dom_text(text):
    """Guess whether a scraped message was written by the user or the AI."""
    likely_user = "?" in text or len(text) < 150 or text.startswith(USER_PREFIXES)
    likely_ai = any(marker in text for marker in AI_MARKERS) or len(text) > 300
    if likely_user and not likely_ai:
        return "USER"
    if likely_ai and not likely_user:
        return "AI"
    return "UNKNOWN"


def extract_dom_messages(html_content, exclude=()):
    """Scrape chat messages out of a saved chat web page.

    Tries a list of CSS selectors commonly used for message containers and
    keeps the first one that yields more than five messages, otherwise the
    most productive one. Returns None if fewer than three messages are found.
    """
    soup = BeautifulSoup(html_content, "html.parser")
    best = []
    for selector in DOM_MESSAGE_SELECTORS:
        elements = soup.select(selector)
        if len(elements) <= 2:
            continue
        messages = []
        for index, el in enumerate(elements):
            text = el.get_text().strip()
            if len(text) <= 10:
                continue
            if any(skip in text for skip in exclude):
                continue
            messages.append(
                {"role": classify_dom_text(text), "text": text, "index": index}
            )
        if len(messages) > len(best):
            best = messages
        if len(messages) > 5:
            break

    if len(best) < 3:
        return None
    return best


def format_dom_transcript(messages):
    parts = ["CONVERSATION EXTRACTED FROM DOM\n" + "=" * 50 + "\n\n"]
    for msg in messages:
        header = "YOU:" if msg["role"] == "USER" else "AI:"
        parts.append(f"{header}\n{msg['text']}\n\n{'─' * 30}\n\n")
    return "".join(parts)


@click.group(
    cls=DefaultGroup,
    default="format",
    default_if_no_args=True,
    context_settings={"help_option_names": ["-h", "--help"]},
)
@click.version_option(None, "--version", package_name="deepseek-formatter")
def cli():
    """Convert DeepSeek chat exports to standalone HTML pages."""
    pass


@cli.command("format")
@click.option(
    "-i",
    "--input",
    "input_path",
    default="conversations.json",
    show_default=True,
    help="Input JSON file exported from DeepSeek.",
)
@click.option(
    "-o",
    "--output",
    default="formatted",
    show_default=True,
    type=click.Path(file_okay=False),
    help="Output directory.",
)
@click.option("-v", "--verbose", is_flag=True, help="Verbose output.")
@click.option(
    "--open",
    "open_browser",
    is_flag=True,
    help="Open the generated index.html in your default browser.",
)
def format_cmd(input_path, output, verbose, open_browser):
    """Convert a conversations.json export into HTML files plus an index."""
    click.secho("DeepSeek Chat Formatter", fg="blue", bold=True)
    output = Path(output)
    try:
        stats = generate_html(input_path, output, verbose=verbose)
    except FormatterError as e:
        if verbose:
            click.echo(traceback.format_exc(), err=True)
        raise click.ClickException(str(e))

    click.secho("\nFormatting completed!", fg="green", bold=True)
    click.secho(f"Output: {output.resolve()}", fg="bright_black")
    print_stats(stats)

    if open_browser:
        index_url = (output / "index.html").resolve().as_uri()
        webbrowser.open(index_url)


@cli.command("dom")
@click.argument("page", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "-o",
    "--output",
    type=click.Path(dir_okay=False),
    help="Transcript file (default: Chat_Extract_<date>.txt in the current directory).",
)
@click.option(
    "--exclude",
    multiple=True,
    help="Skip scraped messages containing this text. Repeatable.",
)
def dom_cmd(page, output, exclude):
    """Extract a plain-text transcript from a saved chat web page."""
    html_content = Path(page).read_text(encoding="utf-8")
    messages = extract_dom_messages(html_content, exclude=exclude)
    if messages is None:
        raise click.ClickException(
            f"No chat messages found in {page}: the DOM approach failed."
        )

    if output is None:
        output = f"Chat_Extract_{datetime.now().strftime('%Y-%m-%d')}.txt"
    output = Path(output)
    output.write_text(format_dom_transcript(messages), encoding="utf-8")
    click.secho(f"Extracted {len(messages)} messages to {output}", fg="green")


def main():
    cli()
