# mdai: Load built-in prompt texts (system prompt, tool descriptions) from mdai.resources and optionally format them.

from importlib import resources


def get_prompt(name: str, **kwargs) -> str:
    """
    Load a text prompt from the mdai.resources package.

    If kwargs are provided, apply str.format(**kwargs) to the content so prompts can
    contain placeholders (e.g., {name}). Without kwargs the raw text is
    returned, so prompts that show JSON examples need no brace escaping.
    """
    data = resources.files("mdai.resources").joinpath(name).read_text(encoding="utf-8")
    if kwargs:
        return data.format(**kwargs)
    return data
