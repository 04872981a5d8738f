"""Allow running the demo as a module: python -m budgetapp."""

from budgetapp.runner import main

if __name__ == "__main__":
    main()
