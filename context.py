"""
Context window module for Local Ollama Chat
Folds a user's recent turns into a text digest for prompt augmentation
"""
from typing import List

from database import ConversationLog
from models import Turn


def render_turns(turns: List[Turn]) -> str:
    """Render chronological turns as User/Assistant pairs separated by blank lines"""
    blocks = [f"User: {t.prompt}\nAssistant: {t.response}" for t in turns]
    return "\n\n".join(blocks).strip()


class ContextWindowBuilder:
    """Builds the bounded digest of prior turns for one user.

    When the current request carries an image, earlier image turns are left
    out since the model cannot look at those images again. The filter runs
    before the window is limited, so older text turns fill the gaps.
    """

    def __init__(self, log: ConversationLog):
        self._log = log

    def window(self, user_id: int, max_turns: int, exclude_image_turns: bool) -> List[Turn]:
        """Qualifying turns in chronological order"""
        if max_turns <= 0:
            return []
        turns = self._log.recent(user_id, max_turns, text_only=exclude_image_turns)
        return list(reversed(turns))

    def build(self, user_id: int, max_turns: int, exclude_image_turns: bool) -> str:
        return render_turns(self.window(user_id, max_turns, exclude_image_turns))
