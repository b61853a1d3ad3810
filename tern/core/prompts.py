"""Prompts the engine sends on its own behalf (summaries, continuation checks)."""

CONTINUE_PROMPT = "Please continue."

COMPRESSION_SYSTEM_PROMPT = """\
You are the component that condenses a long interaction history into a fixed structure.
You are called when the history grows too large. Distil the entire history into a
concise, structured XML snapshot. The snapshot becomes the agent's *only* memory of
the past, and all further work is based on it, so keep every key detail, plan,
error and user instruction.

First, think through the whole history: the user's overall goal, the agent's
actions, tool output, file modifications and any unresolved questions. Identify
every piece of information that matters for future actions.

Then produce the final <state_snapshot> XML object. Be as information-dense as
possible and leave out conversational filler.

The structure MUST be:

<state_snapshot>
    <overall_goal>
        <!-- One concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions and constraints the agent must remember. Bullets. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files created, read, modified or deleted, with their status and findings. -->
    </file_system_state>

    <recent_actions>
        <!-- The last few significant agent actions and their outcomes. Facts only. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan. Mark completed steps. -->
    </current_plan>
</state_snapshot>
"""

COMPRESSION_REQUEST = "First, reason in your scratchpad. Then, generate the <state_snapshot>."

NEXT_SPEAKER_PROMPT = """\
Analyze *only* the content and structure of your immediately preceding response
(your last turn in the conversation history). Based *strictly* on that response,
determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1. **Model Continues:** If your last response explicitly states an immediate next
   action *you* intend to take (e.g. "Next, I will...", "Now I'll process...",
   "Moving on to analyze...", indicating an intended tool call that didn't
   execute), OR if the response seems clearly incomplete (cut off mid-thought
   without a natural conclusion), then the **'model'** should speak next.
2. **Question to User:** If your last response ends with a direct question
   specifically addressed *to the user*, then the **'user'** should speak next.
3. **Waiting for User:** If your last response completed a thought, statement or
   task *and* does not meet the criteria for Rule 1 or Rule 2, it implies a pause
   expecting user input or reaction. In this case the **'user'** should speak next.

**Output Format:**
Respond *only* in JSON format according to the following schema. Do not include
any text outside the JSON structure.
```json
{
  "type": "object",
  "properties": {
    "reasoning": {"type": "string"},
    "next_speaker": {"type": "string", "enum": ["user", "model"]}
  },
  "required": ["next_speaker", "reasoning"]
}
```
"""

NEXT_SPEAKER_SCHEMA = {
    "type": "object",
    "properties": {
        "reasoning": {
            "type": "string",
            "description": "Brief explanation justifying the 'next_speaker' choice.",
        },
        "next_speaker": {
            "type": "string",
            "enum": ["user", "model"],
            "description": "Who should speak next based on the decision rules.",
        },
    },
    "required": ["reasoning", "next_speaker"],
}
