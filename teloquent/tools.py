"""
    Inflection helpers used to derive default table, key, and pivot
    names. Plural and singular forms come from the inflect package.
"""

from functools import lru_cache
import inflect
import re


_engine = inflect.engine()


def pascalcase_to_snake_case(name: str) -> str:
    """Turn PascalCase to snake_case.
        Borrowed from https://stackoverflow.com/a/1176023
    """
    return re.sub(r'(?<!^)(?=[A-Z])', '_', name).lower()

def snake_case_to_pascalcase(name: str) -> str:
    """Turn snake_case to PascalCase."""
    return ''.join(part[:1].upper() + part[1:] for part in name.split('_'))

@lru_cache(maxsize=256)
def singularize(word: str) -> str:
    """Return the singular form of a noun. Words that are already
        singular are returned unchanged.
    """
    if not word:
        return word
    singular = _engine.singular_noun(word)
    return singular if singular else word

@lru_cache(maxsize=256)
def pluralize(word: str) -> str:
    """Return the plural form of a noun. Words that are already plural
        are returned unchanged.
    """
    if not word:
        return word
    if _engine.singular_noun(word):
        return word
    return _engine.plural_noun(word)

def table_name_for(class_name: str) -> str:
    """Default table name for a model class: the lowercased class name
        in plural form.
    """
    return pluralize(class_name.lower())

def foreign_key_for(class_name: str) -> str:
    """Default foreign key column referencing the named class."""
    return f'{singularize(class_name.lower())}_id'

def pivot_table_for(class_name_1: str, class_name_2: str) -> str:
    """Default pivot table name for two related classes: both singular
        lowercased names sorted and joined with an underscore.
    """
    names = sorted([
        singularize(class_name_1.lower()),
        singularize(class_name_2.lower()),
    ])
    return '_'.join(names)
