"""
sakai_names.py
==============
Display names for simulated users, so log lines read as "who did what".
"""
from __future__ import annotations

import random
from typing import Optional

NAMES = """
Aaliyah Aaron Abigail Adam Addison Adrian Aiden Alexa Alexander Alexis Alice
Allison Alyssa Amelia Andrew Angel Anna Annabelle Anthony Aria Ariana Arianna
Asher Ashley Aubree Aubrey Audrey Aurora Austin Autumn Ava Avery Ayden Bella
Benjamin Bentley Blake Brandon Brayden Brianna Brooklyn Caleb Cameron Camila
Caroline Carson Carter Charles Charlotte Chase Chloe Christian Christopher
Claire Clara Colton Connor Cooper Cora Daniel David Dominic Dylan Easton
Eleanor Eli Elias Elijah Elizabeth Ella Ellie Emily Emma Ethan Eva Evan Evelyn
Ezra Faith Gabriel Gabriella Gavin Genesis Gianna Grace Grayson Hailey Hannah
Harper Hazel Henry Hudson Hunter Ian Isaac Isabella Isabelle Isaiah Jace Jack
Jackson Jacob James Jason Jaxon Jaxson Jayden Jeremiah John Jonathan Jordan
Jose Joseph Joshua Josiah Julia Julian Katherine Kayden Kaylee Kennedy Kevin
Khloe Kylie Landon Layla Leah Leo Levi Liam Lillian Lily Lincoln Logan Lucas
Lucy Luke Lydia Mackenzie Madeline Madelyn Madison Mason Mateo Matthew Maya
Melanie Mia Michael Mila Naomi Natalie Nathan Nathaniel Nevaeh Nicholas Noah
Nolan Nora Oliver Olivia Owen Paisley Parker Penelope Peyton Piper Quinn Reagan
Riley Robert Ruby Ryan Ryder Sadie Samantha Samuel Sarah Savannah Sawyer
Scarlett Sebastian Serenity Skylar Sofia Sophia Stella Taylor Theodore Thomas
Tyler Victoria Violet Vivian William Wyatt Xavier Zachary Zoe Zoey
""".split()


def display_name(rng: Optional[random.Random] = None, parts: int = 3) -> str:
    """Three random first names joined by spaces, e.g. 'Ava Leo Nora'."""
    r = rng or random
    return " ".join(r.choice(NAMES) for _ in range(parts))
