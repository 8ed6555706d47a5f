from .ollama import Ollama
from .openai import OpenAI

__all__ = ["OpenAI", "Ollama"]
