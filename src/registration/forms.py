"""
Form rendering and submission parsing for question branches.
"""
from registration.models import find_item
from registration.questions import OTHER_OPTION, TEXT_TYPES


class FormValidationError(ValueError):
    """A submission was rejected. The message is shown to the applicant."""


def _option_values(question) -> list:
    return list(question.options)


def render_form(questions: list, saved_items: list) -> list:
    """Merge schema questions with a user's saved answers for display."""
    rendered = []
    for question in questions:
        saved = find_item(saved_items, question.name)
        value = saved.get('value') if saved else None
        field = {
            'name': question.name,
            'label': question.label,
            'type': question.type,
            'required': question.required,
            'placeholder': question.placeholder or '',
            'min_character_count': question.min_character_count,
            'max_character_count': question.max_character_count,
            'value': '',
            'options': [],
            'other_value': '',
            'file': None,
        }

        if question.is_choice:
            options = _option_values(question)
            if question.type == 'checkbox':
                selected = value if isinstance(value, list) else []
            else:
                selected = [value] if isinstance(value, str) and value else []
            unknown = [v for v in selected if v not in options]
            if unknown and OTHER_OPTION in options:
                selected = [v for v in selected if v in options] + [OTHER_OPTION]
                field['other_value'] = ', '.join(unknown)
            field['options'] = [{'value': o, 'selected': o in selected} for o in options]
        elif question.type == 'file':
            field['file'] = value if isinstance(value, dict) else None
        elif value is not None:
            field['value'] = str(value)

        rendered.append(field)
    return rendered


def _getlist(form, name: str) -> list:
    if hasattr(form, 'getlist'):
        return form.getlist(name)
    value = form.get(name)
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _resolve_other(question, values: list, form) -> list:
    if OTHER_OPTION not in values:
        return values
    other = (form.get(f'{question.name}-other') or '').strip()
    values = [v for v in values if v != OTHER_OPTION]
    if other:
        values.append(other)
    return values


def _is_blank(value) -> bool:
    return value is None or value == '' or value == []


def parse_submission(questions: list, form, files, existing_items: list = None):
    """Validate a submitted form against ``questions``.

    Returns ``(items, pending_uploads)``. Items are ``{name, type, value}``.
    File questions with a new upload get a ``None`` value and an entry
    ``{name, file}`` in pending uploads; the caller stores the file and fills in
    the metadata. Without a new upload the previously saved file is kept.
    """
    items = []
    pending_uploads = []
    for question in questions:
        value = None

        if question.type == 'file':
            upload = files.get(question.name) if files else None
            if upload is not None and upload.filename:
                pending_uploads.append({'name': question.name, 'file': upload})
                items.append({'name': question.name, 'type': question.type, 'value': None})
                continue
            previous = find_item(existing_items, question.name)
            value = previous.get('value') if previous else None

        elif question.is_choice:
            submitted = [v for v in _getlist(form, question.name) if v]
            if question.type != 'checkbox':
                submitted = submitted[:1]
                if submitted and submitted[0] not in question.options:
                    raise FormValidationError(f"'{question.label}' has an invalid value")
            submitted = _resolve_other(question, submitted, form)
            if question.type == 'checkbox':
                value = submitted or None
            else:
                value = submitted[0] if submitted else None

        else:
            raw = form.get(question.name)
            value = raw.strip() if isinstance(raw, str) else None
            if value and question.type in TEXT_TYPES:
                if question.min_character_count and len(value) < question.min_character_count:
                    raise FormValidationError(
                        f"'{question.label}' must be at least {question.min_character_count} characters")
                if question.max_character_count and len(value) > question.max_character_count:
                    raise FormValidationError(
                        f"'{question.label}' must be at most {question.max_character_count} characters")
            value = value or None

        if question.required and _is_blank(value):
            raise FormValidationError(f"'{question.label}' is a required field")
        items.append({'name': question.name, 'type': question.type, 'value': value})

    return items, pending_uploads
