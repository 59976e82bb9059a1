"""Allow running as: python -m proofline

Usage:
  python -m proofline                     # all roles in one process
  python -m proofline --role worker       # match-and-verify workers + queue maintenance
  python -m proofline --role sweeper      # settlement sweeper only
  python -m proofline --sweep-once        # one sweep cycle, then exit
"""

from proofline.main import main

main()
