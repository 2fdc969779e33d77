"""
Question schema.

The questions file is a JSON list of branches, each a named set of form
questions. It is validated once per location, labels and options are rendered
from markdown, and the result is cached.
"""
import copy
import json
import logging
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from registration.mailer import render_markdown

logger = logging.getLogger(__name__)

CHOICE_TYPES = ('checkbox', 'radio', 'select')
TEXT_TYPES = ('text', 'textarea', 'email', 'tel', 'number', 'date', 'url')
OTHER_OPTION = 'Other'

QuestionType = Literal['text', 'textarea', 'email', 'tel', 'number', 'date', 'url',
                       'checkbox', 'radio', 'select', 'file']


class QuestionsConfigError(ValueError):
    """The questions file is invalid or does not contain a requested branch."""


class TextBlock(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    placement: str = Field(alias='for')
    content: str


class Question(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    name: str = Field(min_length=1)
    label: str
    type: QuestionType
    required: bool = False
    options: List[str] = Field(default_factory=list)
    has_other: bool = Field(default=False, alias='hasOther')
    placeholder: Optional[str] = None
    min_character_count: Optional[int] = Field(default=None, ge=0, alias='minCharacterCount')
    max_character_count: Optional[int] = Field(default=None, ge=1, alias='maxCharacterCount')
    show_in_helpscout: bool = Field(default=False, alias='showInHelpScout')

    @model_validator(mode='after')
    def check_options(self):
        if self.type in CHOICE_TYPES:
            if not self.options:
                raise ValueError(f'question "{self.name}" of type {self.type} needs options')
        elif self.options or self.has_other:
            raise ValueError(f'question "{self.name}" of type {self.type} cannot have options')
        return self

    @property
    def is_choice(self) -> bool:
        return self.type in CHOICE_TYPES


class QuestionBranch(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra='forbid')

    name: str = Field(min_length=1)
    text: List[TextBlock] = Field(default_factory=list)
    questions: List[Question]

    @model_validator(mode='after')
    def check_unique_questions(self):
        names = [q.name for q in self.questions]
        if len(set(names)) != len(names):
            raise ValueError(f'question names in branch "{self.name}" are not unique')
        return self


_branches_adapter = TypeAdapter(List[QuestionBranch])

# location -> rendered branches
_cache = {}


def clear_cache():
    _cache.clear()


def _read(location: str):
    with open(location, 'r', encoding='utf-8') as f:
        return json.load(f)


def validate_question_branches(raw) -> List[QuestionBranch]:
    try:
        branches = _branches_adapter.validate_python(raw)
    except ValidationError as e:
        raise QuestionsConfigError(str(e)) from e
    names = [b.name for b in branches]
    if len(set(names)) != len(names):
        raise QuestionsConfigError('Application branch names are not unique')
    return branches


def _render(branches: List[QuestionBranch]) -> List[QuestionBranch]:
    for branch in branches:
        for block in branch.text:
            block.content = render_markdown(block.content)
        for question in branch.questions:
            question.label = render_markdown(question.label, single_line=True)
            if question.is_choice:
                options = list(question.options)
                if question.has_other:
                    options.append(OTHER_OPTION)
                question.options = [render_markdown(o, single_line=True) for o in options]
    return branches


def load_question_branches(location: str) -> List[QuestionBranch]:
    """Validated, rendered branches from ``location``.

    Returns copies so callers may mutate them freely.
    """
    if location not in _cache:
        try:
            raw = _read(location)
        except (OSError, json.JSONDecodeError) as e:
            raise QuestionsConfigError(f'Could not read questions file {location}: {e}') from e
        _cache[location] = _render(validate_question_branches(raw))
        logger.info(f'Loaded {len(_cache[location])} question branches from {location}')
    return copy.deepcopy(_cache[location])


def get_question_branch(location: str, name: str) -> QuestionBranch:
    branch = next((b for b in load_question_branches(location) if b.name == name), None)
    if branch is None:
        raise QuestionsConfigError(f'Branch "{name}" not found in schema ({location})')
    return branch


def read_branch_names(location: str) -> List[str]:
    """Branch names in file order, read without validation or rendering."""
    return [branch['name'] for branch in _read(location)]


def branch_tags(location: str) -> dict:
    return {b.name: [q.name for q in b.questions] for b in load_question_branches(location)}


def all_tags(location: str) -> List[str]:
    tags = []
    for names in branch_tags(location).values():
        for name in names:
            if name not in tags:
                tags.append(name)
    return tags


def max_file_uploads(location: str) -> int:
    counts = [sum(1 for q in b.questions if q.type == 'file')
              for b in load_question_branches(location)]
    return max(counts, default=0)
