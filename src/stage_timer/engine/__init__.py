"""Control and display engines - the record state machine and the viewer loop.

Contains:
- TimerController: validated start/pause/reset/set-duration writes
- CountdownViewer: ticker, offset and subscription activities per display
"""

from .controller import TimerController, ActionOutcome, parse_minutes
from .viewer import CountdownViewer, ViewerFrame, LatestCell

__all__ = ['TimerController', 'ActionOutcome', 'parse_minutes', 'CountdownViewer', 'ViewerFrame', 'LatestCell']
