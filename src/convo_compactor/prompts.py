_PRESERVE_RULES = """\
Preserve these details precisely:
- The original goal of the conversation and any constraints the user stated
- Every decision made and the reasoning behind it
- Errors encountered, their causes, and how they were resolved
- File paths, commands, identifiers, and versions that may be needed later
- Code blocks that matter to the outcome, copied verbatim inside fenced blocks
- The final state: what works, what is still open, and the next steps
"""

COMPACT_FULL_PROMPT = f"""\
Compact the following AI-assisted coding conversation into a dense markdown
document that a developer can read instead of the full transcript.
{_PRESERVE_RULES}
Drop greetings, acknowledgements, and repeated attempts that led nowhere.
Use headings for the main phases of the work.
"""

COMPACT_MAP_PROMPT = f"""\
You are summarizing one segment of a longer AI-assisted coding conversation.
Other segments are summarized separately and combined afterwards, so do not
invent context that is not in this segment.
{_PRESERVE_RULES}
Output a concise markdown summary of this segment only.
"""

COMPACT_REDUCE_PROMPT = """\
Below are summaries of consecutive segments of one AI-assisted coding
conversation, in their original order. Combine them into a single compacted
markdown document. Keep chronology, merge repeated facts, keep code blocks
verbatim, and end with a short "Current state" section.
"""

OVERVIEW_FORMAT = """\
Answer ONLY with tagged sections in this exact format:

<title>Concise title for the whole conversation</title>
<summary>One or two sentences on what was accomplished</summary>
<section type="goal|context|implementation|decisions|problems|learnings|next_steps|diagram" importance="high|medium|low">
<title>Section title</title>
<content>
Markdown body. Use ```mermaid fenced blocks for architecture or flow diagrams.
</content>
</section>
"""

OVERVIEW_FULL_PROMPT = f"""\
Create a structured overview of the following AI-assisted coding conversation
for a developer who wants to understand and learn from it.
{OVERVIEW_FORMAT}"""

OVERVIEW_REDUCE_PROMPT = f"""\
Below are summaries of consecutive segments of one AI-assisted coding
conversation, in their original order. Build a structured overview of the
whole conversation from them.
{OVERVIEW_FORMAT}"""

EXERCISES_FORMAT = """\
Answer ONLY with JSON of this shape:
{"exercises": [{"title": "...", "difficulty": "beginner|intermediate|advanced",
"prompt": "What the learner must do", "hints": ["..."], "solution": "..."}]}
Write 3 to 6 exercises grounded in the code and decisions of the conversation.
"""

EXERCISES_FULL_PROMPT = f"""\
Generate practice exercises that let a developer rehearse the techniques used
in the following AI-assisted coding conversation.
{EXERCISES_FORMAT}"""

EXERCISES_REDUCE_PROMPT = f"""\
Below are summaries of consecutive segments of one AI-assisted coding
conversation, in their original order. Generate practice exercises that let a
developer rehearse the techniques used across the whole conversation.
{EXERCISES_FORMAT}"""

SUGGESTIONS_PROMPT = """\
Suggest up to 5 follow-up questions a developer might ask about the
conversation summarized below. Answer ONLY with a JSON array of objects
{"question": "...", "icon": "code|lightbulb|puzzle|book|rocket|target"}.
"""


def build_full_prompt(instructions: str, title: str, conversation_text: str) -> str:
    return f"{instructions}\n---\nConversation title: \"{title}\"\n\n{conversation_text}"


def build_map_prompt(instructions: str, title: str, segment: int, total: int, conversation_text: str) -> str:
    return (
        f"{instructions}\n---\nConversation title: \"{title}\"\n"
        f"Segment {segment} of {total}\n\n{conversation_text}"
    )


def build_reduce_prompt(instructions: str, title: str, segment_summaries: list[str]) -> str:
    body = "\n\n---\n\n".join(
        f"### Segment {i}\n{summary}" for i, summary in enumerate(segment_summaries, start=1)
    )
    return f"{instructions}\n---\nConversation title: \"{title}\"\n\n{body}"


def build_suggestions_prompt(content: str) -> str:
    return f"{SUGGESTIONS_PROMPT}\n---\nCONVERSATION SUMMARY:\n{content}"
